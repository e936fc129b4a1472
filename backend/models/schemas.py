from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

OVERRIDE_REASONS = (
    "Turnover requirement too high",
    "Experience requirement not met",
    "Technical capability mismatch",
    "Location/Region restriction",
    "Product/Service not in scope",
    "Already applied",
    "Deadline passed",
    "Budget constraint",
    "Resource unavailable",
    "Other (specify in comment)",
)


class CriteriaPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    turnover_cr: Decimal = Field(..., alias="turnoverCr", ge=0, max_digits=10, decimal_places=2)
    project_types: list[str] = Field(..., alias="projectTypes", min_length=1)


class NegativeKeywordPayload(BaseModel):
    keyword: str = Field(..., min_length=1, max_length=200)
    description: str | None = None


class OverridePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    override_status: str = Field(
        ...,
        alias="overrideStatus",
        pattern="^(eligible|not_eligible|not_relevant|manual_review)$",
    )
    override_reason: str = Field(..., alias="overrideReason", min_length=1)
    override_comment: str | None = Field(None, alias="overrideComment")


class ReanalyzeTextPayload(BaseModel):
    text: str = Field(..., min_length=1)
