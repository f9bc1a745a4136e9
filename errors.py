"""
Typed failures raised by the pricing and order workflow code.

All of them are recoverable: the caller reports the message and nothing has
been written. ``main`` turns them into JSON responses with ``status_code``.
"""
from typing import Optional


class ShopError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidPriceInputError(ShopError):
    status_code = 400


class InvalidTransitionError(ShopError):
    status_code = 409


class MissingFieldError(ShopError):
    status_code = 422

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"{field} is required")
        self.field = field


class UnauthorizedTransitionError(ShopError):
    status_code = 403


class ConflictError(ShopError):
    status_code = 409


class OrderNotFoundError(ShopError):
    status_code = 404
