from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from telecare.models.subscription import SubscriptionPlan, SubscriptionStatus
from telecare.schemas.common import UTCInstant


class SubscriptionCreate(BaseModel):
    plan: SubscriptionPlan
    provider: Optional[str] = Field(None, max_length=32)   # "paypal", "mercadopago", ...


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    plan: SubscriptionPlan
    status: SubscriptionStatus
    start_date: Optional[UTCInstant] = None
    end_date: Optional[UTCInstant] = None
    amount: Decimal
    currency: str
    provider: Optional[str] = None
    reference: Optional[str] = None
    created_at: UTCInstant


class EntitlementOut(BaseModel):
    user_id: str
    status: SubscriptionStatus


class PaymentConfirmation(BaseModel):
    subscription_id: str
    confirmed_amount: Decimal = Field(..., gt=0)
    reference: str = Field(..., min_length=1, max_length=255)


class ReactivateIn(BaseModel):
    new_end_date: UTCInstant


class PricesBase(BaseModel):
    doctor_monthly: Decimal = Field(..., gt=0)
    doctor_yearly: Decimal = Field(..., gt=0)
    patient_monthly: Decimal = Field(..., gt=0)
    patient_yearly: Decimal = Field(..., gt=0)
    pharmacy_monthly: Decimal = Field(..., gt=0)
    pharmacy_yearly: Decimal = Field(..., gt=0)


class PricesUpdate(PricesBase):
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class PricesOut(PricesBase):
    model_config = ConfigDict(from_attributes=True)
    currency: str
    updated_at: UTCInstant


class StatsOut(BaseModel):
    total_active: int
    monthly_active: int
    yearly_active: int
    doctors_active: int
    patients_active: int
    pharmacies_active: int
