from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pipeline_engine.crm.contracts import OrgLookup
from pipeline_engine.crm.errors import UnknownStrategyError
from pipeline_engine.crm.models import CRMAssignmentCursor

logger = logging.getLogger("pipeline_engine.crm.assignment")

SUPPORTED_STRATEGIES = ("round_robin", "least_loaded", "fixed", "manager_of")


@dataclass(frozen=True)
class AssignmentContext:
    tenant_id: str
    pipeline_id: uuid.UUID
    stage_id: uuid.UUID
    owner_id: str | None = None


class CursorStore(Protocol):
    def advance(self, tenant_id: str, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> int:
        """Return the current cursor position and move it forward by one."""
        ...


class InMemoryCursorStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._positions: dict[tuple[str, uuid.UUID, uuid.UUID], int] = {}

    def advance(self, tenant_id: str, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> int:
        key = (tenant_id, pipeline_id, stage_id)
        with self._lock:
            position = self._positions.get(key, 0)
            self._positions[key] = position + 1
            return position


class SqlCursorStore:
    """Round-robin cursor persisted in ``crm_assignment_cursor``.

    The position is bumped with a single ``UPDATE ... SET position = position + 1``
    so concurrent resolvers serialize on the row lock alone, until the
    surrounding transaction ends.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def advance(self, tenant_id: str, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> int:
        match = and_(
            CRMAssignmentCursor.tenant_id == tenant_id,
            CRMAssignmentCursor.pipeline_id == pipeline_id,
            CRMAssignmentCursor.stage_id == stage_id,
        )
        if self.session.scalar(select(CRMAssignmentCursor.id).where(match)) is None:
            self._create(tenant_id, pipeline_id, stage_id)

        self.session.execute(
            update(CRMAssignmentCursor)
            .where(match)
            .values(position=CRMAssignmentCursor.position + 1)
            .execution_options(synchronize_session=False)
        )
        position = self.session.scalar(select(CRMAssignmentCursor.position).where(match))
        if position is None:
            raise RuntimeError(f"assignment cursor for stage {stage_id} vanished")
        return position - 1

    def _create(self, tenant_id: str, pipeline_id: uuid.UUID, stage_id: uuid.UUID) -> None:
        try:
            with self.session.begin_nested():
                self.session.add(
                    CRMAssignmentCursor(
                        tenant_id=tenant_id,
                        pipeline_id=pipeline_id,
                        stage_id=stage_id,
                        position=0,
                    )
                )
        except IntegrityError:
            # Another resolver created the row first.
            logger.debug(
                "assignment.cursor.created_concurrently",
                extra={"tenant_id": tenant_id, "stage_id": str(stage_id)},
            )


LoadCounter = Callable[[str, Sequence[str]], dict[str, int]]


class AssignmentResolver:
    def __init__(
        self,
        cursor_store: CursorStore,
        load_counter: LoadCounter,
        org_lookup: OrgLookup,
    ) -> None:
        self.cursor_store = cursor_store
        self.load_counter = load_counter
        self.org_lookup = org_lookup

    def resolve(
        self,
        strategy: str,
        candidates: Sequence[str],
        context: AssignmentContext,
        owner_id: str | None = None,
    ) -> str | None:
        if strategy not in SUPPORTED_STRATEGIES:
            raise UnknownStrategyError(strategy)

        if strategy == "fixed":
            return owner_id
        if strategy == "manager_of":
            if not context.owner_id:
                return None
            return self.org_lookup.manager_of(context.tenant_id, context.owner_id)

        pool = [candidate for candidate in candidates if candidate]
        if not pool:
            return None

        if strategy == "round_robin":
            position = self.cursor_store.advance(context.tenant_id, context.pipeline_id, context.stage_id)
            return pool[position % len(pool)]

        loads = self.load_counter(context.tenant_id, pool)
        return min(sorted(set(pool)), key=lambda candidate: loads.get(candidate, 0))
