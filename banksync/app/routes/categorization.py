from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from banksync.database import get_db
from banksync.app import schemas
from banksync.app.auth import get_current_tenant
from banksync.app.errors import InvalidStateError, NotFoundError
from banksync.app.categorization import CategorizationService

router = APIRouter(prefix="/categorization", tags=["categorization"])


def get_categorization_service(db: Session = Depends(get_db)) -> CategorizationService:
    return CategorizationService(db)


@router.post("/suggest", response_model=schemas.CategorizationResult)
def suggest_category(
    request: schemas.CategorizeRequest,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: CategorizationService = Depends(get_categorization_service)
):
    """
    Suggest a category for one description.

    Example:
        POST /api/categorization/suggest
        {"description": "TESCO STORES 2291"}

        Response:
        {
            "suggested_category_id": 6,
            "suggested_category_name": "Groceries",
            "confidence": 1.0,
            "matched_keywords": ["tesco"],
            "action": "auto-assign",
            "reasoning": "Matched keywords: tesco"
        }
    """
    return service.categorize(tenant.tenant_id, request.description)


@router.post("/batch", response_model=List[schemas.BatchCategorizeResult])
def categorize_batch(
    request: schemas.BatchCategorizeRequest,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: CategorizationService = Depends(get_categorization_service)
):
    results = service.categorize_batch(
        tenant.tenant_id,
        [(item.id, item.description) for item in request.transactions]
    )
    return [schemas.BatchCategorizeResult(id=item_id, result=result) for item_id, result in results]


@router.post("/transactions/{transaction_id}/correct")
def correct_category(
    transaction_id: int,
    correction: schemas.CategoryCorrection,
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: CategorizationService = Depends(get_categorization_service)
):
    """Re-file a transaction; the merchant history picks it up on the next categorization."""
    try:
        transaction = service.learn_from_correction(tenant.tenant_id, transaction_id, correction.category_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"transaction_id": transaction.id, "category_id": transaction.category_id}


@router.get("/stats", response_model=schemas.CategorizationStats)
def get_stats(
    tenant: schemas.TenantContext = Depends(get_current_tenant),
    service: CategorizationService = Depends(get_categorization_service)
):
    return service.get_categorization_stats(tenant.tenant_id)
