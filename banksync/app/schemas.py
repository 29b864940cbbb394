from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date as date_type, datetime
from decimal import Decimal


class TenantContext(BaseModel):
    tenant_id: str
    user_id: str


# Bank connections

class LinkResponse(BaseModel):
    authorization_url: str
    state: str


class LinkedAccount(BaseModel):
    id: int
    account_id: int
    provider_account_id: str
    name: str
    type: str
    balance: Decimal
    currency: Optional[str] = None
    account_number: Optional[str] = None
    sort_code: Optional[str] = None
    iban: Optional[str] = None
    sync_from_date: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None


class SyncRun(BaseModel):
    id: int
    connection_id: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str
    transactions_fetched: int
    transactions_imported: int
    transactions_skipped: int
    transactions_failed: int
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class BankConnection(BaseModel):
    id: int
    provider: str
    provider_connection_id: str
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    status: str
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    latest_sync: Optional[SyncRun] = None
    accounts: List[LinkedAccount] = []


class SyncResult(BaseModel):
    sync_id: Optional[int] = None
    status: str  # success or failed
    fetched: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None


class AccountBalance(BaseModel):
    linked_account_id: int
    provider_account_id: str
    currency: Optional[str] = None
    available: Optional[Decimal] = None
    current: Optional[Decimal] = None
    error: Optional[str] = None


# Import

class ImportCandidate(BaseModel):
    """A provider or file transaction mapped to the internal shape, ready for import."""
    description: str
    amount: Decimal = Field(ge=0)
    date: Optional[date_type] = None
    type: str  # income or expense
    provider_transaction_id: Optional[str] = None
    notes: Optional[str] = None


class ImportResult(BaseModel):
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = []


# Categorization

class CategorizationResult(BaseModel):
    suggested_category_id: Optional[int] = None
    suggested_category_name: Optional[str] = None
    confidence: float = 0.0
    matched_keywords: List[str] = []
    action: str  # auto-assign, suggest or manual
    reasoning: str


class CategorizeRequest(BaseModel):
    description: str


class BatchCategorizeItem(BaseModel):
    id: str
    description: str


class BatchCategorizeRequest(BaseModel):
    transactions: List[BatchCategorizeItem]


class BatchCategorizeResult(BaseModel):
    id: str
    result: CategorizationResult


class CategoryCorrection(BaseModel):
    category_id: int


class TopMerchant(BaseModel):
    merchant: str
    count: int
    category: str


class CategorizationStats(BaseModel):
    total_transactions: int
    categorized_transactions: int
    uncategorized_transactions: int
    categorization_rate: float
    top_merchants: List[TopMerchant] = []
