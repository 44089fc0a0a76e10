from .base import (
    ASCENDING,
    DESCENDING,
    Document,
    DocumentStore,
    FieldFilter,
    Increment,
    QueryDescriptor,
    WriteKind,
    WriteOperation,
    subcollection,
)
from .memory import InMemoryDocumentStore

__all__ = [
    "ASCENDING",
    "DESCENDING",
    "Document",
    "DocumentStore",
    "FieldFilter",
    "Increment",
    "InMemoryDocumentStore",
    "QueryDescriptor",
    "WriteKind",
    "WriteOperation",
    "subcollection",
]
