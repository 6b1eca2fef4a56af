"""
Submission pipeline for meter events.

A new, edited or deleted entry goes through two phases:

1. prepare_* (read-only): validate against the neighbouring events, look for
   a same-date conflict and, for top-up changes with later events, preview
   the cascade.
2. commit: under the user's lock and one transaction, insert/void the
   events and apply the cascade with its audit row.

Expected outcomes (blocked reading, duplicate date, cascade preview) come
back as a Submission status; failures that abort raise MeterLedgerError
subclasses.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Iterator, List, Optional, Union

from .chronology import ChronologyResolver
from .conflicts import ConflictResolver, DuplicateConflict, Resolution
from .consumption import UsageSummary, summarize_usage
from .exceptions import (
    EventNotFound,
    IdempotencyReplay,
    InvalidValue,
    MeterLedgerError,
    StalePreview,
    TransactionFailure,
)
from .impact import BackdateImpactAnalyzer, ImpactAnalysis, shift
from .recalculation import RecalculationExecutor
from .tariff import purchase_kwh_for_cost
from .validator import KWH_PRECISION, ValidationResult, ValidationStatus, is_valid_kwh, validate
from meter_ledger.config.loader import LedgerConfig, default_config
from meter_ledger.storage.models import Event, EventType, RecalculationAudit, TriggerType
from meter_ledger.storage.repository import EventRepository, user_lock

logger = logging.getLogger(__name__)


class SubmissionKind(Enum):
    NEW = auto()
    EDIT = auto()
    DELETE = auto()


class SubmissionStatus(Enum):
    """Where a prepared submission stands."""
    READY = auto()               # Commit directly, nothing else changes
    NEEDS_CONFIRMATION = auto()  # Commit shifts later events; show the preview first
    BLOCKED = auto()             # Validation failed; see `validation`
    CASCADE_CONFLICT = auto()    # The cascade would break later events; see `analysis`
    DUPLICATE = auto()           # Another entry exists at this date; see `duplicate`


@dataclass(frozen=True)
class EventDraft:
    """User input for a new or edited entry.

    For a top-up, `purchase_kwh` is derived from `token_cost` when omitted,
    and `balance_kwh` is derived as previous balance + purchase when omitted.
    A given top-up balance must equal that sum unless it is the first entry.
    """
    event_type: EventType
    event_date: datetime
    balance_kwh: Optional[float] = None
    purchase_kwh: Optional[float] = None
    token_cost: Optional[float] = None
    notes: Optional[str] = None


@dataclass
class Submission:
    """A prepared change, waiting for commit or for a user decision."""
    kind: SubmissionKind
    status: SubmissionStatus
    user_id: str
    candidate: Optional[Event] = None
    target: Optional[Event] = None
    draft: Optional[EventDraft] = None
    prior: Optional[Event] = None
    validation: Optional[ValidationResult] = None
    duplicate: Optional[DuplicateConflict] = None
    analysis: Optional[ImpactAnalysis] = None
    trigger_type: Optional[TriggerType] = None
    offset_kwh: float = 0.0
    reason: Optional[str] = None

    @property
    def can_commit(self) -> bool:
        return self.status in (SubmissionStatus.READY, SubmissionStatus.NEEDS_CONFIRMATION)

    @property
    def affected_ids(self) -> List[int]:
        return self.analysis.affected_ids if self.analysis is not None else []

    @property
    def event_date(self) -> datetime:
        if self.candidate is not None:
            return self.candidate.event_date
        return self.target.event_date


@dataclass(frozen=True)
class CommitResult:
    """What a commit changed."""
    event: Optional[Event] = None
    voided_event_ids: List[int] = field(default_factory=list)
    audit: Optional[RecalculationAudit] = None


class MeterLedger:
    """Entry point for recording, editing and deleting meter events."""

    def __init__(
        self,
        repository: EventRepository,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.config = config or default_config()
        self.clock = clock
        self.chronology = ChronologyResolver(repository)
        self.analyzer = BackdateImpactAnalyzer(
            self.chronology,
            large_offset_warning_kwh=self.config.recalculation.large_offset_warning_kwh,
        )
        self.executor = RecalculationExecutor(
            repository,
            undo_window=self.config.recalculation.undo_window,
            clock=clock,
        )
        self.conflicts = ConflictResolver(repository)

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    def prepare_new(self, user_id: str, draft: EventDraft) -> Submission:
        """Validate a new entry and preview its effect on later events."""
        prior = self.chronology.last_event_before(user_id, draft.event_date)
        candidate = self._build_candidate(user_id, draft, prior)
        submission = Submission(
            kind=SubmissionKind.NEW,
            status=SubmissionStatus.READY,
            user_id=user_id,
            candidate=candidate,
            draft=draft,
            prior=prior,
        )

        if not self._check_neighbours(submission, exclude_id=None):
            return submission

        duplicate = self.conflicts.check_duplicate(user_id, draft.event_date)
        if duplicate is not None:
            submission.status = SubmissionStatus.DUPLICATE
            submission.duplicate = duplicate
            return submission

        if candidate.is_topup:
            self._attach_cascade(
                submission, candidate.purchase_kwh, TriggerType.NEW_BACKDATE_TOPUP, exclude_ids=()
            )
        return submission

    def prepare_edit(self, user_id: str, event_id: int, draft: EventDraft,
                     reason: str = "Edited by user") -> Submission:
        """Prepare replacing an event with edited values.

        The old event is voided and a new one supersedes it. If the change
        alters how much the entry adds (top-up amount, or reading <-> top-up),
        the difference cascades to the events after it.

        Raises:
            EventNotFound: If the event does not exist for this user
            InvalidValue: If it is voided, or a top-up would move past other entries
        """
        target = self._active_event(user_id, event_id)
        old_contribution = (target.purchase_kwh or 0.0) if target.is_topup else 0.0

        prior = self._prior_excluding(user_id, draft.event_date, target.id)
        candidate = replace(self._build_candidate(user_id, draft, prior), supersedes=target.id)
        new_contribution = candidate.purchase_kwh if candidate.is_topup else 0.0
        offset = round(new_contribution - old_contribution, KWH_PRECISION)

        if (target.is_topup or candidate.is_topup) and draft.event_date != target.event_date:
            crossed = [
                e for e in self.repository.fetch_between(user_id, target.event_date, draft.event_date)
                if e.id != target.id
            ]
            if crossed:
                raise InvalidValue(
                    "Moving a top-up past other entries is not supported; "
                    "delete it and record it again at the new date"
                )

        submission = Submission(
            kind=SubmissionKind.EDIT,
            status=SubmissionStatus.READY,
            user_id=user_id,
            candidate=candidate,
            target=target,
            draft=draft,
            prior=prior,
            reason=reason,
        )

        if not self._check_neighbours(submission, exclude_id=target.id):
            return submission

        duplicate = self.conflicts.check_duplicate(user_id, draft.event_date, exclude_event_id=target.id)
        if duplicate is not None:
            submission.status = SubmissionStatus.DUPLICATE
            submission.duplicate = duplicate
            return submission

        if offset != 0:
            trigger = TriggerType.EDIT_TOPUP if target.is_topup else TriggerType.BACKDATE_TOPUP
            self._attach_cascade(submission, offset, trigger, exclude_ids=(target.id,))
        return submission

    def prepare_delete(self, user_id: str, event_id: int,
                       reason: str = "Deleted by user") -> Submission:
        """Prepare voiding an event.

        Deleting a top-up takes its purchase back out of every later balance.

        Raises:
            EventNotFound: If the event does not exist for this user
            InvalidValue: If it is already voided
        """
        target = self._active_event(user_id, event_id)
        submission = Submission(
            kind=SubmissionKind.DELETE,
            status=SubmissionStatus.READY,
            user_id=user_id,
            target=target,
            reason=reason,
        )
        if target.is_topup and target.purchase_kwh:
            self._attach_cascade(
                submission, -target.purchase_kwh, TriggerType.DELETE_TOPUP, exclude_ids=(target.id,)
            )
        return submission

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self, submission: Submission, idempotency_key: Optional[str] = None) -> CommitResult:
        """Persist a prepared submission and its cascade as one unit.

        The affected events are read again under the user's lock; if they
        differ from the preview the commit is refused.

        Raises:
            InvalidValue / MonotonicityViolation: If the submission is BLOCKED
            CascadeConflict: If the cascade has blocking issues
            InvalidValue: If a duplicate date is still unresolved
            StalePreview: If the data changed since the preview
            IdempotencyReplay: If the key was already used
            TransactionFailure: If the store failed; nothing was written
        """
        self._ensure_committable(submission)

        with self._locked_transaction(submission.user_id, "commit") as c:
            self._check_key(idempotency_key, submission.user_id, c)
            analysis = self._recheck(submission, c)

            voided: List[int] = []
            event = None
            if submission.kind == SubmissionKind.NEW:
                event = self.repository.insert_event(
                    replace(submission.candidate, idempotency_key=idempotency_key), conn=c
                )
                trigger_id = event.id
            elif submission.kind == SubmissionKind.EDIT:
                event = self.repository.insert_event(
                    replace(submission.candidate, idempotency_key=idempotency_key), conn=c
                )
                self.repository.void_event(submission.target.id, submission.reason, c, superseded_by=event.id)
                voided.append(submission.target.id)
                trigger_id = event.id
            else:
                self.repository.void_event(submission.target.id, submission.reason, c)
                voided.append(submission.target.id)
                trigger_id = submission.target.id

            audit = None
            if analysis is not None and analysis.requires_cascade:
                audit = self.executor.apply(
                    submission.user_id,
                    trigger_id,
                    submission.trigger_type,
                    analysis.affected_events,
                    submission.offset_kwh,
                    idempotency_key=idempotency_key,
                    conn=c,
                )

        logger.info(
            "Committed %s: user=%s event=%s voided=%s audit=%s",
            submission.kind.name.lower(), submission.user_id,
            event.id if event else None, voided, audit.id if audit else None,
        )
        return CommitResult(event=event, voided_event_ids=voided, audit=audit)

    # ------------------------------------------------------------------
    # Duplicate dates
    # ------------------------------------------------------------------

    def resolve_duplicate(
        self,
        submission: Submission,
        choice: Resolution,
        idempotency_key: Optional[str] = None
    ) -> Union[Submission, CommitResult]:
        """Apply the user's choice for a DUPLICATE submission.

        EDIT_EXISTING returns a new submission that edits the existing entry
        with the submitted values (it may need confirmation itself). REPLACE
        voids the existing entry and commits the new one, without cascade.
        """
        if choice == Resolution.EDIT_EXISTING:
            return self.edit_existing(submission)
        return self.replace_existing(submission, idempotency_key=idempotency_key)

    def edit_existing(self, submission: Submission) -> Submission:
        duplicate = self._require_duplicate(submission)
        return self.prepare_edit(
            submission.user_id, duplicate.existing.id, submission.draft,
            reason="Edited from duplicate-date entry",
        )

    def replace_existing(self, submission: Submission, idempotency_key: Optional[str] = None) -> CommitResult:
        """Void the conflicting entry and insert the new one in one transaction."""
        duplicate = self._require_duplicate(submission)
        with self._locked_transaction(submission.user_id, "replace") as c:
            self._check_key(idempotency_key, submission.user_id, c)
            current = self.conflicts.check_duplicate(submission.user_id, duplicate.event_date, conn=c)
            if current is None or current.existing.id != duplicate.existing.id:
                raise StalePreview(
                    [duplicate.existing.id], [current.existing.id] if current else []
                )
            replacement = replace(
                submission.candidate,
                supersedes=duplicate.existing.id,
                idempotency_key=idempotency_key,
            )
            event = self.conflicts.replace(duplicate, replacement, c)
        return CommitResult(event=event, voided_event_ids=[duplicate.existing.id])

    # ------------------------------------------------------------------
    # Undo and queries
    # ------------------------------------------------------------------

    def undo(self, user_id: str, audit_id: int, reason: Optional[str] = None) -> RecalculationAudit:
        """Reverse a recalculation and roll back the change that caused it.

        The cascade is reversed exactly and the triggering event is voided.
        An edited or deleted entry comes back as a new event carrying the
        earlier values; voided events themselves stay voided.

        Raises:
            AuditNotFound / AlreadyUndone / UndoExpired: From the executor
            InvalidValue: If the triggering entry was changed again since
            TransactionFailure: If the store failed; nothing was written
        """
        reason = reason or f"Undo of recalculation #{audit_id}"
        with self._locked_transaction(user_id, "undo") as c:
            audit = self.executor.undo(audit_id, user_id, reason=reason, conn=c)
            self._roll_back_trigger(audit, reason, c)
        return audit

    def pending_undos(self, user_id: str) -> List[RecalculationAudit]:
        return self.executor.pending_undos(user_id)

    def history(self, user_id: str, include_voided: bool = False,
                limit: Optional[int] = None) -> List[Event]:
        return self.repository.fetch_events(user_id, include_voided=include_voided, limit=limit)

    def current_balance(self, user_id: str) -> Optional[float]:
        latest = self.chronology.latest_event(user_id)
        return latest.balance_kwh if latest else None

    def summary(self, user_id: str) -> UsageSummary:
        return summarize_usage(self.history(user_id), self.config.tariff)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_candidate(self, user_id: str, draft: EventDraft, prior: Optional[Event]) -> Event:
        """Turn a draft into the event that would be stored."""
        if not isinstance(draft.event_date, datetime):
            raise InvalidValue("event_date must be a datetime", draft.event_date)

        purchase = None
        balance = draft.balance_kwh
        if draft.event_type == EventType.TOPUP:
            purchase = draft.purchase_kwh
            if purchase is None:
                purchase = purchase_kwh_for_cost(draft.token_cost, self.config.tariff)
            if not is_valid_kwh(purchase) or purchase <= 0:
                raise InvalidValue("A top-up needs a positive purchase amount or token cost", purchase)
            if draft.token_cost is not None and draft.token_cost < 0:
                raise InvalidValue("token_cost cannot be negative", draft.token_cost)
            purchase = float(purchase)
            expected = shift(prior.balance_kwh if prior else 0.0, purchase)
            if balance is None:
                balance = expected
            elif prior is not None and shift(balance, 0.0) != expected:
                raise InvalidValue(
                    f"A top-up after {prior.balance_kwh:.2f} kWh adding {purchase:.2f} kWh "
                    f"must leave {expected:.2f} kWh",
                    balance,
                )
        elif balance is None:
            raise InvalidValue("A reading needs the balance shown on the meter")

        return Event(
            user_id=user_id,
            event_type=draft.event_type,
            event_date=draft.event_date,
            balance_kwh=balance,
            purchase_kwh=purchase,
            token_cost=draft.token_cost if draft.event_type == EventType.TOPUP else None,
            notes=draft.notes,
        )

    def _check_neighbours(self, submission: Submission, exclude_id: Optional[int]) -> bool:
        """Validate against the previous event and, for readings, the next one.

        Returns False (and marks the submission BLOCKED) on a blocking result.
        """
        candidate = submission.candidate
        prior = submission.prior
        result = validate(
            candidate.balance_kwh,
            prior.balance_kwh if prior else None,
            candidate.event_type,
        )
        submission.validation = result
        if result.is_blocking:
            submission.status = SubmissionStatus.BLOCKED
            logger.warning(
                "Entry blocked: user=%s status=%s date=%s",
                submission.user_id, result.status.value, candidate.event_date.isoformat(),
            )
            return False

        if candidate.event_type == EventType.READING:
            following = self._next_excluding(submission.user_id, candidate.event_date, exclude_id)
            if following is not None and following.event_type == EventType.READING:
                later = validate(following.balance_kwh, candidate.balance_kwh, EventType.READING)
                if later.status == ValidationStatus.READING_INCREASED:
                    submission.status = SubmissionStatus.BLOCKED
                    submission.validation = ValidationResult(
                        status=ValidationStatus.READING_INCREASED,
                        message=(
                            f"The reading on {following.event_date:%Y-%m-%d %H:%M} "
                            f"({following.balance_kwh:.2f} kWh) would be higher than this "
                            f"entry ({candidate.balance_kwh:.2f} kWh)"
                        ),
                        delta=later.delta,
                        prior_balance=candidate.balance_kwh,
                        suggestion="Check the value, or record a top-up in between",
                    )
                    logger.warning(
                        "Entry blocked by later reading: user=%s date=%s next=%s",
                        submission.user_id, candidate.event_date.isoformat(), following.id,
                    )
                    return False
        return True

    def _attach_cascade(self, submission: Submission, offset_kwh: float,
                        trigger_type: TriggerType, exclude_ids) -> None:
        analysis = self.analyzer.analyze(
            submission.user_id, submission.event_date, offset_kwh,
            exclude_event_ids=exclude_ids, anchor=self._cascade_anchor(submission),
        )
        submission.analysis = analysis
        submission.offset_kwh = offset_kwh
        submission.trigger_type = trigger_type
        if not analysis.affected_events:
            return
        if analysis.has_blocking:
            submission.status = SubmissionStatus.CASCADE_CONFLICT
            logger.warning(
                "Cascade blocked: user=%s date=%s offset=%s issues=%d",
                submission.user_id, submission.event_date.isoformat(),
                offset_kwh, len(analysis.blocking_issues),
            )
        else:
            submission.status = SubmissionStatus.NEEDS_CONFIRMATION

    def _cascade_anchor(self, submission: Submission,
                        conn: Optional[sqlite3.Connection] = None) -> Optional[Event]:
        """The unshifted entry that will sit right before the affected events."""
        if submission.kind != SubmissionKind.DELETE:
            return submission.candidate
        target = submission.target
        return self._prior_excluding(submission.user_id, target.event_date, target.id, conn=conn)

    def _ensure_committable(self, submission: Submission) -> None:
        if submission.status == SubmissionStatus.BLOCKED:
            submission.validation.raise_for_status(submission.candidate.balance_kwh)
        if submission.status == SubmissionStatus.CASCADE_CONFLICT:
            submission.analysis.ensure_applicable()
        if submission.status == SubmissionStatus.DUPLICATE:
            raise InvalidValue(
                "An entry already exists for this date; edit it or replace it first"
            )

    def _recheck(self, submission: Submission, conn: sqlite3.Connection) -> Optional[ImpactAnalysis]:
        """Re-read the context the preview was based on, inside the transaction."""
        user_id = submission.user_id
        if submission.target is not None:
            current = self.repository.get_event(submission.target.id, user_id=user_id, conn=conn)
            if current is None or current.voided:
                raise StalePreview([submission.target.id], [])

        if submission.kind != SubmissionKind.DELETE:
            exclude = submission.target.id if submission.target is not None else None
            prior = self._prior_excluding(user_id, submission.event_date, exclude, conn=conn)
            expected = submission.prior.id if submission.prior else None
            actual = prior.id if prior else None
            # A cascade may have moved the prior balance without changing its id.
            if expected != actual or (
                    prior is not None and prior.balance_kwh != submission.prior.balance_kwh):
                raise StalePreview([expected], [actual])
            duplicate = self.conflicts.check_duplicate(
                user_id, submission.event_date, exclude_event_id=exclude, conn=conn
            )
            if duplicate is not None:
                raise InvalidValue(duplicate.describe())

        if submission.analysis is None:
            return None
        exclude_ids = (submission.target.id,) if submission.target is not None else ()
        analysis = self.analyzer.analyze(
            user_id, submission.event_date, submission.offset_kwh,
            exclude_event_ids=exclude_ids,
            anchor=self._cascade_anchor(submission, conn), conn=conn,
        )
        if analysis.affected_ids != submission.analysis.affected_ids:
            raise StalePreview(submission.analysis.affected_ids, analysis.affected_ids)
        analysis.ensure_applicable()
        return analysis

    def _roll_back_trigger(self, audit: RecalculationAudit, reason: str,
                           conn: sqlite3.Connection) -> None:
        """Void the change that caused a cascade and restore what it replaced."""
        trigger = self.repository.get_event(audit.triggering_event_id, user_id=audit.user_id, conn=conn)
        if trigger is None:
            raise EventNotFound(audit.triggering_event_id, audit.user_id)

        if audit.trigger_type == TriggerType.DELETE_TOPUP:
            if trigger.superseded_by is not None:
                raise InvalidValue("The deleted top-up was already restored")
            restored = self._restore_copy(trigger, audit, conn)
            self.repository.link_superseded_by(trigger.id, restored.id, conn)
            return

        if trigger.voided:
            raise InvalidValue(
                f"Entry {trigger.id} was changed after recalculation #{audit.id}; undo that change first"
            )
        restored = None
        if trigger.supersedes is not None:
            previous = self.repository.get_event(trigger.supersedes, user_id=audit.user_id, conn=conn)
            restored = self._restore_copy(previous, audit, conn, replacing=trigger)
        self.repository.void_event(
            trigger.id, reason, conn, superseded_by=restored.id if restored else None
        )

    def _restore_copy(self, original: Event, audit: RecalculationAudit,
                      conn: sqlite3.Connection, replacing: Optional[Event] = None) -> Event:
        """Insert an active copy of a voided event with a balance that fits today's chain."""
        anchor = replacing or original
        exclude = replacing.id if replacing is not None else original.id
        if original.is_topup:
            prior = self._prior_excluding(audit.user_id, original.event_date, exclude, conn=conn)
            balance = shift(prior.balance_kwh if prior else 0.0, original.purchase_kwh or 0.0)
        else:
            drift = sum(
                a.offset_kwh for a in self.repository.fetch_audits(audit.user_id, conn=conn)
                if a.id != audit.id and a.undone_at is None and anchor.id in a.affected_event_ids
            )
            balance = shift(original.balance_kwh, drift)
        return self.repository.insert_event(replace(
            original,
            id=None,
            balance_kwh=balance,
            voided=False,
            voided_reason=None,
            voided_at=None,
            supersedes=anchor.id,
            superseded_by=None,
            created_at=None,
            idempotency_key=None,
        ), conn=conn)

    def _active_event(self, user_id: str, event_id: int) -> Event:
        event = self.repository.get_event(event_id, user_id=user_id)
        if event is None:
            raise EventNotFound(event_id, user_id)
        if event.voided:
            raise InvalidValue(f"Event {event_id} is voided and cannot be changed")
        return event

    def _prior_excluding(self, user_id: str, date: datetime, exclude_id: Optional[int],
                         conn: Optional[sqlite3.Connection] = None) -> Optional[Event]:
        prior = self.chronology.last_event_before(user_id, date, conn=conn)
        if prior is not None and prior.id == exclude_id:
            prior = self.chronology.last_event_before(user_id, prior.event_date, conn=conn)
        return prior

    def _next_excluding(self, user_id: str, date: datetime,
                        exclude_id: Optional[int]) -> Optional[Event]:
        for event in self.chronology.events_after(user_id, date):
            if event.id != exclude_id:
                return event
        return None

    def _require_duplicate(self, submission: Submission) -> DuplicateConflict:
        if submission.status != SubmissionStatus.DUPLICATE or submission.duplicate is None:
            raise InvalidValue("Submission has no duplicate-date conflict to resolve")
        return submission.duplicate

    def _check_key(self, idempotency_key: Optional[str], user_id: str,
                   conn: sqlite3.Connection) -> None:
        if idempotency_key is not None and self.repository.idempotency_key_used(idempotency_key, conn):
            logger.info("Idempotency replay: key=%s user=%s", idempotency_key, user_id)
            raise IdempotencyReplay(idempotency_key)

    @contextmanager
    def _locked_transaction(self, user_id: str, operation: str) -> Iterator[sqlite3.Connection]:
        """Per-user lock plus one write transaction; store errors become TransactionFailure."""
        with user_lock(user_id):
            try:
                with self.repository.transaction() as c:
                    yield c
            except MeterLedgerError:
                raise
            except sqlite3.Error as e:
                logger.warning("%s rolled back: user=%s error=%s", operation, user_id, e)
                raise TransactionFailure(operation, e) from e
