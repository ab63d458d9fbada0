from pydantic import BaseModel, field_validator
from typing import Optional, List, Union

from .reconciliation import ReconciliationResult


class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

    @field_validator("phoneNumber", mode="before")
    @classmethod
    def phone_number_as_text(cls, value: Union[str, int, None]) -> Optional[str]:
        # clients commonly send the number as a JSON integer
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]


class FinalResponse(BaseModel):
    contact: ContactResponse

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "FinalResponse":
        return cls(
            contact=ContactResponse(
                primaryContactId=result.primary_contact_id,
                emails=result.emails,
                phoneNumbers=result.phone_numbers,
                secondaryContactIds=result.secondary_contact_ids,
            )
        )
