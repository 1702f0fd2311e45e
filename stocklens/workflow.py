"""
StockLens - Receipt Capture Workflow

PURPOSE: Sequence photo capture, OCR, amount validation and the user's decision
SCOPE: Draft receipt lifecycle, confirm / manual entry / rescan branches,
       single active capture session
DEPENDENCIES: asyncio, managers.py (store), ocr_processor.py (OCR), events.py

A draft receipt is created the moment a photo arrives so the image is never
orphaned from a record. Drafts are not flagged in storage: the workflow holds
the draft id in its PendingCapture and deletes the draft on every exit path
other than a save.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .config import config
from .events import RECEIPTS_CHANGED, EventBus
from .exceptions import InvalidAmountError, PersistenceError, WorkflowStateError
from .models import CapturedPhoto, ReceiptRecord
from .parsers import ReceiptAmountParser
from .validators import is_valid_amount, parse_manual_amount

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = 'idle'
    CAPTURING = 'capturing'
    AWAITING_OCR = 'awaiting_ocr'
    DECIDING = 'deciding'
    MANUAL_ENTRY = 'manual_entry'
    CONFIRMED = 'confirmed'
    RESCANNING = 'rescanning'


class DecisionKind(str, Enum):
    NO_AMOUNT = 'no_amount'
    INVALID_AMOUNT = 'invalid_amount'
    AMOUNT_FOUND = 'amount_found'


class DecisionOption(str, Enum):
    CONFIRM = 'confirm'
    MANUAL = 'manual'
    RESCAN = 'rescan'


TRANSITIONS = {
    CaptureState.IDLE: {CaptureState.CAPTURING},
    CaptureState.CAPTURING: {CaptureState.AWAITING_OCR, CaptureState.RESCANNING},
    CaptureState.AWAITING_OCR: {CaptureState.DECIDING, CaptureState.RESCANNING},
    CaptureState.DECIDING: {CaptureState.CONFIRMED, CaptureState.MANUAL_ENTRY, CaptureState.RESCANNING},
    CaptureState.MANUAL_ENTRY: {CaptureState.CONFIRMED, CaptureState.DECIDING, CaptureState.RESCANNING},
    CaptureState.CONFIRMED: {CaptureState.IDLE},
    CaptureState.RESCANNING: {CaptureState.IDLE},
}


@dataclass(frozen=True)
class CaptureDecision:
    """What the user is asked after OCR."""
    kind: DecisionKind
    options: Tuple[DecisionOption, ...]
    amount: Optional[float] = None
    rejected_amount: Optional[float] = None

    def allows(self, option: DecisionOption) -> bool:
        return option in self.options

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'options': [option.value for option in self.options],
            'amount': self.amount,
            'rejected_amount': self.rejected_amount,
        }


@dataclass(frozen=True)
class PendingCapture:
    """The one in-flight capture session. Replaced wholesale, never mutated."""
    photo: CapturedPhoto
    draft_id: Optional[int] = None
    ocr_text: Optional[str] = None
    amount: Optional[float] = None


class CaptureWorkflow:
    """State machine driving a single receipt capture session."""

    def __init__(self, store: Any, ocr: Any, event_bus: EventBus,
                 user_id: Optional[str] = None,
                 parser: Optional[ReceiptAmountParser] = None,
                 ocr_timeout: Optional[float] = None,
                 amount_ceiling: Optional[float] = None):
        self.store = store
        self.ocr = ocr
        self.event_bus = event_bus
        self.user_id = user_id or config.DEFAULT_USER_ID
        self.parser = parser or ReceiptAmountParser()
        self.ocr_timeout = ocr_timeout if ocr_timeout is not None else config.OCR_TIMEOUT_SECONDS
        self.amount_ceiling = amount_ceiling

        self._state = CaptureState.IDLE
        self._pending: Optional[PendingCapture] = None
        self._decision: Optional[CaptureDecision] = None
        # Bumped whenever a session starts or is discarded; stale async steps compare against it
        self._session = 0

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def pending(self) -> Optional[PendingCapture]:
        return self._pending

    @property
    def decision(self) -> Optional[CaptureDecision]:
        return self._decision

    def snapshot(self) -> Dict[str, Any]:
        pending = self._pending
        return {
            'state': self._state.value,
            'draft_id': pending.draft_id if pending else None,
            'photo_uri': pending.photo.uri if pending else None,
            'ocr_text': pending.ocr_text if pending else None,
            'amount': pending.amount if pending else None,
            'decision': self._decision.to_dict() if self._decision else None,
        }

    # ------------------------------------------------------------------
    # Capture and OCR
    # ------------------------------------------------------------------

    async def process_receipt(self, photo: CapturedPhoto) -> Optional[CaptureDecision]:
        """Capture a photo, run OCR and return the decision to present."""
        pending = await self.start_capture(photo)
        if pending is None:
            return None
        return await self.run_ocr()

    async def start_capture(self, photo: CapturedPhoto) -> Optional[PendingCapture]:
        """Begin a session and create its draft receipt. Ignored while a capture is in flight."""
        if self._state is not CaptureState.IDLE:
            logger.warning(f"Capture already in progress ({self._state.value}); ignoring new photo")
            return None

        self._session += 1
        session = self._session
        self._pending = PendingCapture(photo=photo)
        self._decision = None
        self._transition(CaptureState.CAPTURING)

        draft_id = None
        try:
            draft_id = await self.store.create(ReceiptRecord(
                user_id=self.user_id,
                image_uri=photo.uri,
                total_amount=None,
                synced=False,
            ))
            logger.info(f"Created draft receipt {draft_id} for {photo.filename}")
        except Exception as e:
            logger.error(f"Failed to create draft receipt: {e}")

        if session != self._session:
            # Rescanned while the draft was being created
            await self.discard_draft(draft_id)
            return None

        self._pending = replace(self._pending, draft_id=draft_id)
        self._transition(CaptureState.AWAITING_OCR)
        return self._pending

    async def run_ocr(self) -> Optional[CaptureDecision]:
        """OCR the pending photo and move to DECIDING. OCR failures count as empty text."""
        if self._state is not CaptureState.AWAITING_OCR:
            raise WorkflowStateError('run OCR', self._state.value)

        session = self._session
        pending = self._pending

        text = ''
        try:
            result = await asyncio.wait_for(self.ocr.recognize(pending.photo), timeout=self.ocr_timeout)
            text = self._result_text(result)
        except asyncio.TimeoutError:
            logger.warning(f"OCR timed out after {self.ocr_timeout}s")
        except Exception as e:
            logger.error(f"OCR process error: {e}")

        if session != self._session:
            logger.info("Capture was discarded while OCR was running; dropping OCR result")
            return None

        decision = self._decide(text)
        self._pending = replace(pending, ocr_text=text or None, amount=decision.amount)
        self._decision = decision
        self._transition(CaptureState.DECIDING)
        logger.info(f"OCR decision for draft {pending.draft_id}: {decision.kind.value}")
        return decision

    @staticmethod
    def _result_text(result: Any) -> str:
        if result is None:
            return ''
        if isinstance(result, str):
            return result
        if isinstance(result, dict):
            return str(result.get('text') or '')
        return str(getattr(result, 'text', '') or '')

    def _decide(self, text: str) -> CaptureDecision:
        if not text or not text.strip():
            return CaptureDecision(
                kind=DecisionKind.NO_AMOUNT,
                options=(DecisionOption.CONFIRM, DecisionOption.MANUAL, DecisionOption.RESCAN),
            )

        extracted = self.parser.extract_amount(text)
        if extracted is None or not is_valid_amount(extracted, self.amount_ceiling):
            if extracted is not None:
                logger.warning(f"Detected amount {extracted} seems unrealistic")
            return CaptureDecision(
                kind=DecisionKind.INVALID_AMOUNT,
                options=(DecisionOption.MANUAL, DecisionOption.RESCAN),
                rejected_amount=extracted,
            )

        return CaptureDecision(
            kind=DecisionKind.AMOUNT_FOUND,
            options=(DecisionOption.CONFIRM, DecisionOption.MANUAL, DecisionOption.RESCAN),
            amount=extracted,
        )

    # ------------------------------------------------------------------
    # User decisions
    # ------------------------------------------------------------------

    async def confirm(self) -> ReceiptRecord:
        """Accept the suggested amount, or zero when nothing was detected."""
        if self._state is not CaptureState.DECIDING or not self._decision.allows(DecisionOption.CONFIRM):
            raise WorkflowStateError('confirm', self._state.value)

        amount = self._decision.amount if self._decision.amount is not None else 0.0
        return await self._save(amount)

    def begin_manual_entry(self) -> Optional[float]:
        """Switch to manual entry and return the amount to prefill, if any."""
        if self._state is not CaptureState.DECIDING:
            raise WorkflowStateError('enter an amount manually', self._state.value)
        self._transition(CaptureState.MANUAL_ENTRY)
        return self._pending.amount

    def cancel_manual_entry(self) -> None:
        if self._state is not CaptureState.MANUAL_ENTRY:
            raise WorkflowStateError('leave manual entry', self._state.value)
        self._transition(CaptureState.DECIDING)

    async def submit_manual_amount(self, text: str) -> ReceiptRecord:
        """Save a user-typed amount. Invalid input raises and leaves the state untouched."""
        if self._state not in (CaptureState.DECIDING, CaptureState.MANUAL_ENTRY):
            raise WorkflowStateError('enter an amount manually', self._state.value)

        amount = parse_manual_amount(text)
        if amount is None:
            raise InvalidAmountError(text)

        if self._state is CaptureState.DECIDING:
            self._transition(CaptureState.MANUAL_ENTRY)
        return await self._save(amount)

    async def rescan(self) -> bool:
        """Discard the draft and return to IDLE so a new photo can be taken."""
        return await self._discard('rescan')

    async def cancel(self) -> bool:
        """Abandon the capture. Same cleanup as rescan."""
        return await self._discard('cancel')

    async def discard_draft(self, draft_id: Optional[int]) -> bool:
        """Delete a draft by id. A missing draft is a no-op."""
        if draft_id is None:
            return False
        try:
            removed = await self.store.delete(draft_id)
        except Exception as e:
            logger.error(f"Failed to discard draft {draft_id}: {e}")
            return False

        if removed:
            logger.info(f"Discarded draft receipt {draft_id}")
            self.event_bus.publish(RECEIPTS_CHANGED, {'id': draft_id, 'deleted': True})
        return bool(removed)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _discard(self, action: str) -> bool:
        if self._state in (CaptureState.IDLE, CaptureState.RESCANNING):
            logger.debug(f"Nothing to {action} ({self._state.value})")
            return False

        pending = self._pending
        self._transition(CaptureState.RESCANNING)
        self._session += 1
        self._pending = None
        self._decision = None

        removed = await self.discard_draft(pending.draft_id if pending else None)
        self._transition(CaptureState.IDLE)
        return removed

    async def _save(self, amount: float) -> ReceiptRecord:
        pending = self._pending
        session = self._session
        fields = {
            'total_amount': amount,
            'ocr_data': pending.ocr_text or '',
            'synced': False,
        }

        record_id = pending.draft_id
        updated = False
        try:
            if record_id is not None:
                updated = await self.store.update(record_id, fields)
        except Exception as e:
            raise self._save_failed(session, pending, e) from e

        if session != self._session:
            # Rescanned while saving; the rescan owns the draft's cleanup
            raise WorkflowStateError('save', 'discarded')

        if not updated:
            # Draft never created or already gone; keep the amount regardless
            try:
                record_id = await self.store.create(ReceiptRecord(
                    user_id=self.user_id, image_uri=pending.photo.uri, **fields
                ))
            except Exception as e:
                raise self._save_failed(session, pending, e) from e

            if session != self._session:
                await self.discard_draft(record_id)
                raise WorkflowStateError('save', 'discarded')

        record = ReceiptRecord(
            id=record_id, user_id=self.user_id, image_uri=pending.photo.uri, **fields
        )
        self.event_bus.publish(RECEIPTS_CHANGED, {'id': record_id})
        logger.info(f"Saved receipt {record_id} with total {amount:.2f}")

        self._transition(CaptureState.CONFIRMED)
        self._pending = None
        self._decision = None
        self._transition(CaptureState.IDLE)
        return record

    def _save_failed(self, session: int, pending: PendingCapture, error: Exception) -> PersistenceError:
        logger.error(f"Save error for draft {pending.draft_id}: {error}")
        if session == self._session and self._state is CaptureState.MANUAL_ENTRY:
            self._transition(CaptureState.DECIDING)
        return PersistenceError(f"Failed to save receipt: {error}")

    def _transition(self, new_state: CaptureState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise WorkflowStateError(f"move to {new_state.value}", self._state.value)
        logger.debug(f"Capture state {self._state.value} -> {new_state.value}")
        self._state = new_state
