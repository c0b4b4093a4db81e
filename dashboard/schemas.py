"""
Pydantic schemas for dashboard request/response models
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ===== MUTATION PAYLOADS =====

class MaterialConsumptionCreate(BaseModel):
    """Material consumed against an operation"""
    operationId: str
    materialId: str
    consumedQuantity: float = Field(gt=0)
    wasteQuantity: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class NcrCreate(BaseModel):
    """New non-conformance report"""
    operationId: Optional[str] = None
    title: str
    description: str
    category: str
    severity: str
    quantityAffected: int = Field(ge=0)
    reportedBy: str


class NcrStatusUpdate(BaseModel):
    """Status transition for an NCR"""
    status: str
    notes: Optional[str] = None


class QualityCheckCreate(BaseModel):
    """Recorded quality check"""
    operationId: str
    checkType: str
    result: str
    measurements: Optional[Dict[str, float]] = None
    notes: Optional[str] = None
    inspectorId: str


# ===== RESPONSES =====

class QueryEnvelope(BaseModel):
    """Query data plus cache metadata"""
    data: Any = None
    meta: Dict[str, Any]


class MutationEnvelope(BaseModel):
    """Mutation result"""
    data: Any = None
