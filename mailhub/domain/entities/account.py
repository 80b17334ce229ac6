"""Account domain entity."""

from dataclasses import dataclass

from mailhub.domain.enums import BackendKind
from mailhub.domain.exceptions import ValidationException


@dataclass(frozen=True)
class Account:
    """A connected mailbox on one backend.

    credential_ref points at the single active credential for the account
    (by default the account id itself, since credentials are keyed per account).
    """

    id: str
    backend_kind: BackendKind
    email_address: str
    credential_ref: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationException("Account ID is required", field="id")
        if not isinstance(self.backend_kind, BackendKind):
            raise ValidationException(
                f"Unsupported backend kind: {self.backend_kind!r}",
                field="backend_kind",
            )
        if not self.credential_ref:
            object.__setattr__(self, "credential_ref", self.id)
