"""
Exception taxonomy

Validation and lookup problems are raised before any store call is made;
persistence problems surface as StoreError from the store implementations.
"""


class PlannerError(Exception):
    """Base exception for planner failures."""


class ValidationError(ValueError, PlannerError):
    """Mandatory input missing or a precondition does not hold."""


class ItemNotFoundError(LookupError, PlannerError):
    """Requested group, item or index does not exist."""


class StoreError(PlannerError):
    """Persistence operation failed."""


class DocumentNotFoundError(StoreError):
    """Partial update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}/{doc_id} does not exist")
        self.collection = collection
        self.doc_id = doc_id
