from fastapi import APIRouter

from app.core.config import get_settings
from app.schemas.ingestion import CompanyMergeSuggestionsResponse
from app.services.processing_service import ProcessingService

router = APIRouter(prefix="/companies", tags=["companies"])


@router.get("/merge-suggestions", response_model=CompanyMergeSuggestionsResponse)
def get_merge_suggestions(user_id: str) -> CompanyMergeSuggestionsResponse:
    service = ProcessingService(get_settings())
    return service.merge_suggestions(user_id)
