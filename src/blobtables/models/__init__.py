from blobtables.models.blob import BlobInfo, VersionedBlob
from blobtables.models.column import ColumnDefinition, ValidationRules, system_columns
from blobtables.models.enums import ColumnType, FilterOperator, SortDirection
from blobtables.models.index_file import IndexFile
from blobtables.models.query import FilterCondition, QueryResult, QueryState, SortConfig
from blobtables.models.session import SessionContext, StoreConfig
from blobtables.models.table import Document, TableFile
from blobtables.models.validation import FieldError, UniqueCheck

__all__ = [
    "BlobInfo",
    "VersionedBlob",
    "ColumnDefinition",
    "ValidationRules",
    "system_columns",
    "ColumnType",
    "FilterOperator",
    "SortDirection",
    "IndexFile",
    "FilterCondition",
    "SortConfig",
    "QueryState",
    "QueryResult",
    "SessionContext",
    "StoreConfig",
    "Document",
    "TableFile",
    "FieldError",
    "UniqueCheck",
]
