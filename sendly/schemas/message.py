from pydantic import BaseModel, Field

E164_PATTERN = r"^\+[1-9]\d{6,14}$"


class TransactionalMessageIn(BaseModel):
    phone_e164: str = Field(pattern=E164_PATTERN)
    message: str = Field(min_length=1, max_length=1600)
    sender: str | None = Field(default=None, max_length=11)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=100)


class TransactionalMessageOut(BaseModel):
    job_key: str
    queued: bool
    status: str = "queued"
