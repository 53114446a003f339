from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for failures the CRM core reports to its callers."""

    code = "domain_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(DomainError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: Any) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} not found with id: {entity_id}",
            {"entity_type": entity_type, "id": entity_id},
        )


class DuplicateKeyError(DomainError):
    code = "duplicate_key"

    def __init__(self, entity_type: str, field: str, value: Any) -> None:
        self.entity_type = entity_type
        self.field = field
        self.value = value
        super().__init__(
            f"{entity_type} already exists with {field}: {value}",
            {"entity_type": entity_type, "field": field, "value": value},
        )


class ReferenceNotFoundError(DomainError):
    """A foreign key on a candidate (or a parent in a by-parent read) does not resolve."""

    code = "reference_not_found"

    def __init__(self, entity_type: str, field: str, value: Any) -> None:
        self.entity_type = entity_type
        self.field = field
        self.value = value
        super().__init__(
            f"Referenced {entity_type} not found with id: {value}",
            {"entity_type": entity_type, "field": field, "id": value},
        )


class OwnershipMismatchError(DomainError):
    code = "ownership_mismatch"

    def __init__(self, child_type: str, parent_type: str, parent_id: Any, expected_owner_id: Any) -> None:
        super().__init__(
            f"{parent_type} {parent_id} does not belong to customer {expected_owner_id}",
            {
                "entity_type": child_type,
                "parent_type": parent_type,
                "parent_id": parent_id,
                "customer_id": expected_owner_id,
            },
        )


class InvalidArgumentError(DomainError):
    code = "invalid_argument"

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        details: dict[str, Any] = {}
        if field is not None:
            details = {"field": field, "value": value}
        super().__init__(message, details)
