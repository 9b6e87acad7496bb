# app/schemas/verification.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from app.models.verification_token import TokenPurpose


class CamelModel(BaseModel):
    # Wire format is camelCase; Python code keeps snake_case names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IssueTokenIn(CamelModel):
    identity: int | EmailStr = Field(description="User id or email of the account owner")
    purpose: TokenPurpose = TokenPurpose.EMAIL_VERIFICATION


class IssueTokenOut(CamelModel):
    # The plaintext token is never part of this response; only the dispatcher sees it.
    token_sent: bool
    token_sequence: int


class ResendVerifyIn(CamelModel):
    email: EmailStr


class TokenIn(CamelModel):
    token: str = Field(min_length=1, max_length=256)


class VerifyOut(CamelModel):
    verified: bool = True
    email: str
    verified_at: datetime


class VerifyFailureOut(CamelModel):
    verified: bool = False
    error_code: str
    message: str
    resend_available: bool = False


class TokenStatsRow(CamelModel):
    purpose: str
    is_valid: bool
    count: int


class TokenHealthOut(CamelModel):
    last_24_hours: list[TokenStatsRow]
    rate_limiter: str
    dispatcher: str
    timestamp: datetime
