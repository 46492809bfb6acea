"""
Erreurs métier.

Les services lèvent ces exceptions ; la couche HTTP les convertit en
réponses JSON {"detail": ...} avec le status_code associé.
"""

from __future__ import annotations


class DealerHubError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(DealerHubError):
    status_code = 404


class InvalidArgument(DealerHubError):
    status_code = 400


class InvalidState(DealerHubError):
    status_code = 409


class Forbidden(DealerHubError):
    status_code = 403


class Internal(DealerHubError):
    status_code = 500


class InsufficientStockError(InvalidArgument):
    def __init__(self, detail: str, *, product_id: int):
        super().__init__(detail)
        self.product_id = product_id


class InvalidDiscountValueError(InvalidArgument):
    pass


class DiscountRejectedError(InvalidArgument):
    def __init__(self, detail: str, *, reason):
        super().__init__(detail)
        self.reason = reason
