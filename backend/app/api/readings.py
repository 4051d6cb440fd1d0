from __future__ import annotations

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_reading_ingest_service
from app.schemas.common import ApiResponse
from app.schemas.readings import Reading, ReadingAcceptedResponse
from app.services.readings import ReadingIngestService


router = APIRouter(prefix="/api/readings", tags=["readings"])


@router.post("", response_model=ApiResponse[ReadingAcceptedResponse], status_code=status.HTTP_201_CREATED)
def post_reading(
    payload: Reading = Body(...),
    db: Session = Depends(get_db),
    ingest_service: ReadingIngestService = Depends(get_reading_ingest_service),
) -> ApiResponse[ReadingAcceptedResponse]:
    result = ingest_service.ingest(db, payload, source="http")
    return ApiResponse(
        message="Reading accepted",
        data=ReadingAcceptedResponse(
            reading_id=result.row.id,
            kind=result.row.kind,
            building_id=result.row.building_id,
            equipment_id=result.row.equipment_id,
            recorded_at=result.reading.recorded_at,
            monitoring_submitted=result.monitoring_submitted,
        ),
    )
