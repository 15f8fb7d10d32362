from dataclasses import dataclass
from typing import List


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None

    status_code = 400


class InvalidSignature(DomainError):
    status_code = 400


class MalformedEvent(DomainError):
    status_code = 400


class AccountNotFound(DomainError):
    status_code = 404


class RecurringPaymentNotFound(DomainError):
    status_code = 404


class ProviderCallFailed(DomainError):
    status_code = 502
