"""In-memory repositories injected into the subsystem's components.

Storage is an external concern; these repositories give the components a
narrow CRUD surface they can be tested against.  ``ProfessionalRepository``
additionally owns the one contended resource in the system, responder
workload, and changes it only under a per-professional ``asyncio.Lock``.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Callable, Generic, Optional, TypeVar

import structlog

from crisisbridge.models import (
    AvailabilitySlot,
    AvailabilityStatus,
    Professional,
    ProfessionalStatus,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError, KeyError):
    """Entity not found in the repository."""
    pass


class DuplicateError(RepositoryError):
    """An entity with the same id already exists."""
    pass


class ProfessionalNotFoundError(NotFoundError):
    """No professional with the given id."""
    pass


class CapacityExceededError(RepositoryError):
    """Reserving a case would push a professional past ``max_cases``."""
    pass


class InMemoryRepository(Generic[T]):
    """Id-keyed store that hands back the stored objects themselves.

    Used for records with a single owner (an escalation is only mutated by
    its own task, a channel only by the channel service), so no copying or
    locking happens here.
    """

    def __init__(self, id_getter: Callable[[T], str], entity_name: str = "entity") -> None:
        self._id_getter = id_getter
        self._entity_name = entity_name
        self._items: dict[str, T] = {}

    def save(self, entity: T) -> T:
        self._items[self._id_getter(entity)] = entity
        return entity

    def get(self, entity_id: str) -> T:
        """Return the entity.

        Raises:
            NotFoundError: If no entity has ``entity_id``.
        """
        if entity_id not in self._items:
            raise NotFoundError(f"No {self._entity_name} with id '{entity_id}'")
        return self._items[entity_id]

    def find_by_id(self, entity_id: str) -> Optional[T]:
        return self._items.get(entity_id)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        if predicate is None:
            return list(self._items.values())
        return [item for item in self._items.values() if predicate(item)]

    def delete(self, entity_id: str) -> bool:
        return self._items.pop(entity_id, None) is not None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._items


class ProfessionalRepository:
    """Professional directory with atomic workload accounting.

    Reads return deep copies.  ``current_cases`` only moves through
    ``reserve()`` and ``release()``, each holding that professional's lock,
    so concurrent assignments can never exceed ``max_cases``.
    """

    def __init__(self, professionals: list[Professional] | None = None) -> None:
        self._professionals: dict[str, Professional] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        for professional in professionals or []:
            self.add(professional)

    def _lock_for(self, professional_id: str) -> asyncio.Lock:
        lock = self._locks.get(professional_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[professional_id] = lock
        return lock

    def _require(self, professional_id: str) -> Professional:
        if professional_id not in self._professionals:
            raise ProfessionalNotFoundError(f"No professional with id '{professional_id}'")
        return self._professionals[professional_id]

    def add(self, professional: Professional) -> Professional:
        """Register a professional.

        Raises:
            DuplicateError: If the id is already registered.
        """
        if professional.professional_id in self._professionals:
            raise DuplicateError(
                f"Professional '{professional.professional_id}' already registered."
            )
        self._professionals[professional.professional_id] = copy.deepcopy(professional)
        logger.info(
            "professional_added",
            professional_id=professional.professional_id,
            specialties=professional.specialties,
        )
        return copy.deepcopy(professional)

    def get(self, professional_id: str) -> Professional:
        return copy.deepcopy(self._require(professional_id))

    def list(self, status: ProfessionalStatus | None = None) -> list[Professional]:
        return [
            copy.deepcopy(p) for p in self._professionals.values()
            if status is None or p.status == status
        ]

    async def reserve(self, professional_id: str) -> Professional:
        """Atomically take one case slot.

        Raises:
            ProfessionalNotFoundError: Unknown id.
            CapacityExceededError: The professional is already at ``max_cases``.
        """
        async with self._lock_for(professional_id):
            professional = self._require(professional_id)
            if not professional.has_capacity():
                raise CapacityExceededError(
                    f"Professional '{professional_id}' is at capacity "
                    f"({professional.workload.current_cases}/{professional.workload.max_cases})."
                )
            professional.workload.current_cases += 1
            professional.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(professional)

    async def release(self, professional_id: str) -> Professional:
        """Give back one case slot; never drops below zero."""
        async with self._lock_for(professional_id):
            professional = self._require(professional_id)
            if professional.workload.current_cases > 0:
                professional.workload.current_cases -= 1
                professional.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(professional)

    async def update_availability(
        self,
        professional_id: str,
        current_status: AvailabilityStatus | None = None,
        schedule: list[AvailabilitySlot] | None = None,
        override_until: datetime | None = None,
        emergency_contact: bool | None = None,
    ) -> Professional:
        async with self._lock_for(professional_id):
            professional = self._require(professional_id)
            availability = professional.availability
            if current_status is not None:
                availability.current_status = current_status
            if schedule is not None:
                availability.schedule = list(schedule)
            if override_until is not None:
                availability.override_until = override_until
            if emergency_contact is not None:
                availability.emergency_contact = emergency_contact
            availability.last_updated = datetime.now(timezone.utc)
            professional.updated_at = availability.last_updated
            return copy.deepcopy(professional)

    async def update_workload(self, professional_id: str, max_cases: int) -> Professional:
        """Change ``max_cases``.  Open cases above the new limit are kept."""
        if max_cases <= 0:
            raise ValueError(f"max_cases must be positive, got {max_cases}")
        async with self._lock_for(professional_id):
            professional = self._require(professional_id)
            professional.workload.max_cases = max_cases
            professional.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(professional)

    async def update_status(self, professional_id: str, status: ProfessionalStatus) -> Professional:
        async with self._lock_for(professional_id):
            professional = self._require(professional_id)
            professional.status = status
            professional.updated_at = datetime.now(timezone.utc)
            return copy.deepcopy(professional)

    def __len__(self) -> int:
        return len(self._professionals)

    def __contains__(self, professional_id: str) -> bool:
        return professional_id in self._professionals
