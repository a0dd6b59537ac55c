from typing import Optional, Literal
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


class UserData(BaseCouchbaseEntityData):
    email: str
    name: Optional[str] = None
    role: Literal["buyer", "seller", "admin"] = "buyer"
    fica_approved: bool = False
    rejection_reason: Optional[str] = None
    suspended: bool = False
    suspension_reason: Optional[str] = None


class User(BaseModelCouchbase[UserData]):
    _collection_name = "users"
