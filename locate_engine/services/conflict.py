"""
Locate Engine Conflict Resolver

Detects contradictory or unverifiable utility information and tracks
it until a human resolves it.

Detection rules:
- A utility replies CONFLICT                          -> UTILITY_REPORTED
- Utility A says CLEAR for type T while utility B's
  evidence shows a type-T facility on site            -> CONTRADICTORY_MARKS
- Crew finds marks that do not match a reply          -> FIELD_VERIFICATION_MISMATCH

Records are fingerprinted so a re-run never raises the same conflict
twice, open or resolved. Detection also folds into any open record
with the same reason over the same responses.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from ..clock import utcnow
from ..models.ticket import (
    CLEARED_STATUSES,
    SYSTEM_ACTOR,
    AuditEventType,
    ConflictReason,
    ConflictRecord,
    ConflictResolutionType,
    ResponseStatus,
    StatusTransition,
    UtilityResponse,
    UtilityType,
)
from ..repositories import ConcurrentUpdateError
from .state_machine import RESPONSE_TRANSITIONS, InvalidTransition, TransitionResult


logger = logging.getLogger(__name__)


@dataclass
class ConflictDetected:
    """Emitted once per new conflict record."""
    conflict: ConflictRecord
    ticket_number: str
    transition: Optional[StatusTransition] = None


def conflict_fingerprint(
    reason: ConflictReason,
    responses: List[UtilityResponse],
    material: Optional[dict] = None
) -> str:
    """
    Stable hash of reason, involved responses and the contradicting facts.

    material carries only what makes the conflict distinct. Evidence
    and reply times outside it are ignored, so a re-mark that repeats
    the same contradiction hashes to the same value.
    """
    payload = json.dumps(
        {
            "reason": reason.value,
            "responses": sorted(str(r.id) for r in responses),
            "material": material or {},
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ConflictResolver:
    """
    Conflict lifecycle.

    detect() is called by the state machine after every response change.
    Resolution never jumps the ticket to CLEAR directly: it corrects the
    involved responses and asks the state machine to re-evaluate.
    """

    def __init__(self, store, state_machine, timeline):
        self.tickets = store.tickets
        self.responses = store.responses
        self.conflicts = store.conflicts
        self.state_machine = state_machine
        self.timeline = timeline

    async def detect(self, ticket_id: UUID, now: datetime) -> List[ConflictDetected]:
        ticket = await self.tickets.get(ticket_id)
        if ticket.is_terminal:
            return []
        responses = await self.responses.list_for_ticket(ticket_id)

        detected = []
        for candidate in self._candidates(ticket_id, responses, now):
            event = await self._record(candidate, ticket.ticket_number, now)
            if event is not None:
                detected.append(event)
        return detected

    async def record_field_mismatch(
        self,
        ticket_id: UUID,
        response: UtilityResponse,
        verified_by: UUID,
        notes: Optional[str],
        photo_refs: List[str],
        now: datetime
    ) -> Optional[ConflictDetected]:
        """Crew found marks that contradict the utility's reply."""
        ticket = await self.tickets.get(ticket_id)
        if ticket.is_terminal:
            raise InvalidTransition(ticket.status, ticket.status, "ticket is closed")
        candidate = ConflictRecord(
            ticket_id=ticket_id,
            reason=ConflictReason.FIELD_VERIFICATION_MISMATCH,
            response_ids=[response.id],
            evidence_refs=list(photo_refs),
            detail=(
                f"Field check by {verified_by} does not match {response.utility_name} "
                f"({response.response_status.value})" + (f": {notes}" if notes else "")
            ),
            fingerprint=conflict_fingerprint(
                ConflictReason.FIELD_VERIFICATION_MISMATCH,
                [response],
                {"notes": notes, "photos": sorted(photo_refs), "by": str(verified_by)},
            ),
            detected_at=now,
        )
        return await self._record(
            candidate, ticket.ticket_number, now,
            actor=str(verified_by), merge_open=False,
        )

    async def resolve(
        self,
        conflict_id: UUID,
        resolved_by: UUID,
        resolution_type: ConflictResolutionType,
        notes: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> TransitionResult:
        conflict = await self.conflicts.get(conflict_id)
        actor = str(resolved_by)
        now = now or utcnow()

        if conflict.is_open:
            conflict.conflict_resolved_at = now
            conflict.resolved_by = resolved_by
            conflict.resolution_type = resolution_type
            conflict.resolution_notes = notes
            try:
                conflict = await self.conflicts.save(conflict)
            except ConcurrentUpdateError:
                # Another resolver won; it owns the audit row and corrections
                logger.info("Conflict %s was resolved concurrently", conflict.id)
                return await self.state_machine.reevaluate(conflict.ticket_id, actor=actor, now=now)

            await self.timeline.add_event(
                ticket_id=conflict.ticket_id,
                event_type=AuditEventType.CONFLICT_RESOLVED,
                content=f"Conflict {conflict.reason.value} resolved as {resolution_type.value}",
                actor=actor,
                data={
                    "conflict_id": str(conflict.id),
                    "resolution_type": resolution_type.value,
                    "notes": notes,
                },
                at=now,
            )
            logger.info("Conflict %s resolved as %s by %s", conflict.id, resolution_type.value, actor)

            # Closed tickets keep their responses as they were
            ticket = await self.tickets.get(conflict.ticket_id)
            response_ids = [] if ticket.is_terminal else conflict.response_ids
            for response_id in response_ids:
                response = await self.responses.get(response_id)
                for status in self._corrected_statuses(response.response_status, resolution_type):
                    await self.state_machine.set_response_status(
                        conflict.ticket_id, response_id, status, actor, now,
                        notes=notes, verified_by=resolved_by,
                    )

        return await self.state_machine.reevaluate(conflict.ticket_id, actor=actor, now=now)

    async def open_conflicts(self, ticket_id: UUID) -> List[ConflictRecord]:
        return await self.conflicts.list_for_ticket(ticket_id, open_only=True)

    # =========================================================================
    # Private methods
    # =========================================================================

    def _candidates(
        self,
        ticket_id: UUID,
        responses: List[UtilityResponse],
        now: datetime
    ) -> List[ConflictRecord]:
        candidates = []

        for response in responses:
            if response.response_status != ResponseStatus.CONFLICT:
                continue
            detail = f"{response.utility_name} reported a conflict"
            if response.evidence.notes:
                detail = f"{detail}: {response.evidence.notes}"
            candidates.append(ConflictRecord(
                ticket_id=ticket_id,
                reason=ConflictReason.UTILITY_REPORTED,
                response_ids=[response.id],
                evidence_refs=list(response.evidence.photo_refs),
                detail=detail,
                fingerprint=conflict_fingerprint(
                    ConflictReason.UTILITY_REPORTED,
                    [response],
                    {"reported_at": response.responded_at.isoformat() if response.responded_at else None},
                ),
                detected_at=now,
            ))

        for cleared in responses:
            if cleared.response_status != ResponseStatus.CLEAR:
                continue
            if cleared.utility_type == UtilityType.OTHER:
                continue
            for observer in responses:
                if observer.id == cleared.id:
                    continue
                if cleared.utility_type not in observer.evidence.observed_facility_types:
                    continue
                pair = [cleared, observer]
                candidates.append(ConflictRecord(
                    ticket_id=ticket_id,
                    reason=ConflictReason.CONTRADICTORY_MARKS,
                    response_ids=[r.id for r in pair],
                    evidence_refs=list(observer.evidence.photo_refs),
                    detail=(
                        f"{cleared.utility_name} reported CLEAR but {observer.utility_name} "
                        f"observed {cleared.utility_type.value} facilities on site"
                    ),
                    fingerprint=conflict_fingerprint(
                        ConflictReason.CONTRADICTORY_MARKS,
                        pair,
                        {"facility_type": cleared.utility_type.value},
                    ),
                    detected_at=now,
                ))

        return candidates

    async def _record(
        self,
        candidate: ConflictRecord,
        ticket_number: str,
        now: datetime,
        actor: Optional[str] = None,
        merge_open: bool = True
    ) -> Optional[ConflictDetected]:
        existing = await self.conflicts.find_by_fingerprint(candidate.ticket_id, candidate.fingerprint)
        if existing is not None:
            return None
        if merge_open and await self._open_duplicate(candidate) is not None:
            return None

        conflict = await self.conflicts.add(candidate)
        logger.warning(
            "Conflict on ticket %s (%s): %s",
            ticket_number, conflict.reason.value, conflict.detail,
        )
        await self.timeline.add_system_event(
            conflict.ticket_id,
            conflict.detail,
            event_type=AuditEventType.CONFLICT_DETECTED,
            data={
                "conflict_id": str(conflict.id),
                "reason": conflict.reason.value,
                "response_ids": [str(i) for i in conflict.response_ids],
            },
            at=now,
        )

        result = await self.state_machine.flag_conflict(
            conflict.ticket_id,
            actor=actor or SYSTEM_ACTOR,
            reason=conflict.detail,
            now=now,
        )
        transition = result.transitions[0] if result.transitions else None
        return ConflictDetected(conflict=conflict, ticket_number=ticket_number, transition=transition)

    async def _open_duplicate(self, candidate: ConflictRecord) -> Optional[ConflictRecord]:
        """An open record for the same reason over the same responses."""
        wanted = sorted(str(i) for i in candidate.response_ids)
        for conflict in await self.conflicts.list_for_ticket(candidate.ticket_id, open_only=True):
            if conflict.reason == candidate.reason and sorted(str(i) for i in conflict.response_ids) == wanted:
                logger.debug("Conflict %s already open for %s", conflict.id, candidate.reason.value)
                return conflict
        return None

    @staticmethod
    def _corrected_statuses(
        current: ResponseStatus,
        resolution_type: ConflictResolutionType
    ) -> List[ResponseStatus]:
        """Response moves that apply a resolution, walked through MARKED if needed."""
        if resolution_type == ConflictResolutionType.MARKS_VERIFIED:
            target = ResponseStatus.VERIFIED_ON_SITE
        elif current in CLEARED_STATUSES:
            return []
        else:
            target = ResponseStatus.CLEAR

        if current == target:
            return []
        if target in RESPONSE_TRANSITIONS[current]:
            return [target]
        if ResponseStatus.MARKED in RESPONSE_TRANSITIONS[current]:
            return [ResponseStatus.MARKED, target]
        return []
