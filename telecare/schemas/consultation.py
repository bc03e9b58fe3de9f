from typing import Optional
from pydantic import BaseModel, ConfigDict

from telecare.models.consultation import ConsultationStatus
from telecare.schemas.common import UTCInstant


class ConsultationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    room_id: Optional[str] = None
    meeting_url: Optional[str] = None
    provisioning_error: Optional[str] = None
    status: ConsultationStatus
    started_at: Optional[UTCInstant] = None
    ended_at: Optional[UTCInstant] = None
    created_at: UTCInstant
