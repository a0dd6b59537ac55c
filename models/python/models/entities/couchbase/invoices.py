from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class InvoiceItem(BaseModel):
    lot_id: str
    lot_number: int
    description: str
    quantity: int = 1
    unit_price: float
    total_price: float


class InvoiceData(BaseCouchbaseEntityData):
    invoice_number: str
    auction_id: str
    user_id: str
    invoice_type: Literal["buyer", "seller"]
    items: List[InvoiceItem] = []
    subtotal: float
    commission: float
    total: float
    due_date: datetime
    # Paid offline by EFT; reconciled by an admin
    payment_status: Literal["pending", "paid"] = "pending"
    paid_at: Optional[datetime] = None


class Invoice(BaseModelCouchbase[InvoiceData]):
    _collection_name = "invoices"
