# retention_os/models/api/ai_response.py
from pydantic import BaseModel

from retention_os.models.domain.retention_domain import Weight


class WeightsResponse(BaseModel):
    """Response for GET /ai/weights"""

    weights: list[Weight]
    effective: dict[str, float]


class WeightUpdateResponse(BaseModel):
    """Response for PUT /ai/weights/{name}"""

    name: str
    value: float


class ModelUpdateResponse(BaseModel):
    """Response for POST /ai/update-event/{event_id}"""

    event_id: int
    applied: bool
