from pydantic import BaseModel


class PlanInfo(BaseModel):
    price_id: str
    product_id: str
    name: str
    cuts_included_per_period: int
    interval: str
    price_amount: int


class CatalogSyncResult(BaseModel):
    synced: int
