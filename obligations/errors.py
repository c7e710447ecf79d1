"""
Error Taxonomy Module

Typed failures raised at the operation boundary of the obligation engine.
Callers map them to responses: validation problems, missing (or foreign)
records, and settlements that could not be applied as a single unit.
"""

from typing import Optional


class ObligationError(Exception):
    """Base class for all obligation engine errors"""
    pass


class ValidationError(ObligationError, ValueError):
    """
    Missing or invalid input at an operation boundary.
    Never retried; the caller must fix the request.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(ObligationError, LookupError):
    """
    Record does not exist or belongs to another owner.
    Both cases produce the same message so existence is never disclosed.
    """

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConsistencyFailure(ObligationError):
    """
    A multi-step settlement failed part way through and was rolled back.
    The entity and its collaborators are left exactly as they were.
    """

    def __init__(self, message: str, entity_type: Optional[str] = None,
                 entity_id: Optional[str] = None):
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConcurrencyError(ConsistencyFailure):
    """Record was modified by another writer since it was read"""

    def __init__(self, entity_type: str, entity_id: str,
                 expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"{entity_type.replace('_', ' ').capitalize()} {entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            entity_type=entity_type,
            entity_id=entity_id
        )
        self.expected_version = expected_version
        self.actual_version = actual_version
