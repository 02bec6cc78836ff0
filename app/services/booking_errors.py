from fastapi import status


class BookingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST


class BookingValidationError(BookingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class BookingConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str = "This time slot is no longer available. Please pick another.") -> None:
        super().__init__(message)


class InvalidTransitionError(BookingError):
    status_code = status.HTTP_409_CONFLICT


class AppointmentNotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class OAuthStateError(BookingError):
    status_code = status.HTTP_401_UNAUTHORIZED
