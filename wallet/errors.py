class WalletServiceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WalletServiceError):
    status_code = 400


class Unauthorized(WalletServiceError):
    status_code = 401


class NotFound(WalletServiceError):
    status_code = 404


class InvalidStateTransition(WalletServiceError):
    status_code = 409


class PriceUnavailable(WalletServiceError):
    status_code = 409
