"""
Domain errors raised by the engines.

Each carries the HTTP status the API answers with; main.py registers the
handlers that turn them into JSON responses.
"""


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str = "Request failed"):
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    status_code = 400


class EmptyCartError(ShopError):
    status_code = 400

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class AuthenticationError(ShopError):
    status_code = 401


class ForbiddenError(ShopError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFoundError(ShopError):
    status_code = 404


class ConflictError(ShopError):
    status_code = 409


class InvalidTransitionError(ConflictError):
    pass


class InsufficientStockError(ConflictError):
    pass


class UnavailableError(ShopError):
    """The document store is not configured or not reachable."""
    status_code = 503

    def __init__(self, message: str = "Database not available"):
        super().__init__(message)
