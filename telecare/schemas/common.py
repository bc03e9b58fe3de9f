from typing import Annotated, Generic, List, TypeVar

from pydantic import AwareDatetime, BaseModel, PlainSerializer

from telecare.core.types import isoformat_z

# aware in, `2025-06-10T14:30:00.000Z` out
UTCInstant = Annotated[AwareDatetime, PlainSerializer(isoformat_z, return_type=str, when_used="json")]

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    total: int
    page: int
    page_size: int
    items: List[T]
