from pydantic import BaseModel, Field

from udin.client.draft_store import DraftFile
from udin.core.schemas import CamelModel


class CustomerInfo(CamelModel):
    user_id: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"{self.first_name or ''} {self.last_name or ''}".strip()


class SessionContext(BaseModel):
    """Everything one checkout run needs, passed explicitly instead of held in globals.

    ``files`` are the in-memory selections of this session; the draft store is
    the only persistent layer. ``in_progress`` guards against a second run
    starting while one is in flight.
    """

    customer: CustomerInfo = Field(default_factory=CustomerInfo)
    files: list[DraftFile] = Field(default_factory=list)
    in_progress: bool = False
