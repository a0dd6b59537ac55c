from .config import (
    DEFAULT_BUCKET_NAME,
    HOST,
    PROTOCOL,
    get_cluster,
    get_default_bucket,
    check_connection
)
from .keyspace import (
    Keyspace,
    get_keyspace,
)
from .base_model import (
    BaseModelCouchbase,
    BaseCouchbaseEntityData,
    DataT,
    T
)

from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)
