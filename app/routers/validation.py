from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_current_user
from app.models.user import User
from app.services.validation import default_mx_checker, validate, validate_many

router = APIRouter()


class ValidateEmailRequest(BaseModel):
    email: str


class ValidateBulkRequest(BaseModel):
    emails: list[str] = Field(..., max_length=1000)


@router.post("/email")
async def validate_email(
    body: ValidateEmailRequest,
    user: User = Depends(get_current_user),
):
    """Validate one address (syntax, disposable domain, optional MX) and score it. Nothing is stored."""
    return validate(body.email, default_mx_checker()).to_dict()


@router.post("/bulk")
async def validate_bulk(
    body: ValidateBulkRequest,
    user: User = Depends(get_current_user),
):
    results = validate_many(body.emails, default_mx_checker())
    return {
        "results": [r.to_dict() for r in results],
        "valid_count": sum(1 for r in results if r.is_valid),
        "invalid_count": sum(1 for r in results if not r.is_valid),
    }
