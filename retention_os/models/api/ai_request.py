# retention_os/models/api/ai_request.py
from pydantic import BaseModel, Field


class WeightUpdateRequest(BaseModel):
    """Request for PUT /ai/weights/{name}"""

    value: float = Field(..., description="New weight, 0 to 10")
    reason: str | None = Field(default=None, max_length=500, description="Recorded in the audit row")
