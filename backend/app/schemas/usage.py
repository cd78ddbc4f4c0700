from pydantic import BaseModel


class ConsumeCreditRequest(BaseModel):
    appointment_id: int


class UsageBalance(BaseModel):
    cuts_used: int
    cuts_remaining: int
