import asyncio
from unittest.mock import AsyncMock

import pytest

from stocklens.exceptions import InvalidAmountError, PersistenceError, WorkflowStateError
from stocklens.managers import ReceiptManager
from stocklens.models import CapturedPhoto
from stocklens.workflow import CaptureState, CaptureWorkflow, DecisionKind, DecisionOption

PHOTO = CapturedPhoto(uri='file:///tmp/receipt-1.jpg', data=b'jpeg-bytes')


@pytest.fixture
def workflow(receipt_manager, fake_ocr, event_bus):
    return CaptureWorkflow(receipt_manager, fake_ocr, event_bus, user_id='tester')


@pytest.mark.asyncio
async def test_amount_found_then_confirm(workflow, fake_ocr, receipt_manager, recorded_events):
    fake_ocr.text = "SHOP\nTOTAL £45.67\nTHANK YOU"

    decision = await workflow.process_receipt(PHOTO)

    assert decision.kind is DecisionKind.AMOUNT_FOUND
    assert decision.amount == 45.67
    assert workflow.state is CaptureState.DECIDING
    draft_id = workflow.pending.draft_id
    draft = await receipt_manager.get_by_id(draft_id)
    assert draft.total_amount is None
    assert recorded_events == []

    record = await workflow.confirm()

    assert record.id == draft_id
    stored = await receipt_manager.get_by_id(draft_id)
    assert stored.total_amount == 45.67
    assert stored.synced is False
    assert 'TOTAL' in stored.ocr_data
    assert workflow.state is CaptureState.IDLE
    assert workflow.pending is None
    assert recorded_events == [('receipts-changed', {'id': draft_id})]


@pytest.mark.asyncio
async def test_no_text_offers_confirm_as_zero(workflow, receipt_manager):
    decision = await workflow.process_receipt(PHOTO)

    assert decision.kind is DecisionKind.NO_AMOUNT
    assert decision.options == (DecisionOption.CONFIRM, DecisionOption.MANUAL, DecisionOption.RESCAN)

    record = await workflow.confirm()
    assert (await receipt_manager.get_by_id(record.id)).total_amount == 0.0


@pytest.mark.asyncio
async def test_implausible_amount_only_allows_manual_or_rescan(workflow, fake_ocr):
    fake_ocr.text = "TOTAL 250,000.00"

    decision = await workflow.process_receipt(PHOTO)

    assert decision.kind is DecisionKind.INVALID_AMOUNT
    assert decision.rejected_amount == 250000.0
    assert not decision.allows(DecisionOption.CONFIRM)
    with pytest.raises(WorkflowStateError):
        await workflow.confirm()
    assert workflow.state is CaptureState.DECIDING


@pytest.mark.asyncio
async def test_text_without_amount_is_invalid(workflow, fake_ocr):
    fake_ocr.text = "Thank you for visiting"
    decision = await workflow.process_receipt(PHOTO)
    assert decision.kind is DecisionKind.INVALID_AMOUNT
    assert decision.rejected_amount is None


@pytest.mark.asyncio
async def test_ocr_error_counts_as_no_text(workflow, fake_ocr):
    fake_ocr.error = RuntimeError("camera roll unavailable")
    decision = await workflow.process_receipt(PHOTO)
    assert decision.kind is DecisionKind.NO_AMOUNT


@pytest.mark.asyncio
async def test_ocr_timeout_counts_as_no_text(receipt_manager, fake_ocr, event_bus):
    fake_ocr.text = "TOTAL 9.99"
    fake_ocr.delay = 1.0
    workflow = CaptureWorkflow(receipt_manager, fake_ocr, event_bus, ocr_timeout=0.05)

    decision = await workflow.process_receipt(PHOTO)

    assert decision.kind is DecisionKind.NO_AMOUNT


@pytest.mark.asyncio
async def test_manual_entry_saves_typed_amount(workflow, fake_ocr, receipt_manager):
    fake_ocr.text = "TOTAL 12.00"
    await workflow.process_receipt(PHOTO)
    draft_id = workflow.pending.draft_id

    assert workflow.begin_manual_entry() == 12.0
    assert workflow.state is CaptureState.MANUAL_ENTRY

    record = await workflow.submit_manual_amount("13,40")

    assert record.id == draft_id
    assert (await receipt_manager.get_by_id(draft_id)).total_amount == 13.4
    assert workflow.state is CaptureState.IDLE


@pytest.mark.asyncio
async def test_invalid_manual_amount_keeps_state(workflow, fake_ocr):
    fake_ocr.text = "TOTAL 12.00"
    await workflow.process_receipt(PHOTO)
    workflow.begin_manual_entry()

    with pytest.raises(InvalidAmountError):
        await workflow.submit_manual_amount("twelve")

    assert workflow.state is CaptureState.MANUAL_ENTRY
    assert workflow.pending.amount == 12.0


@pytest.mark.asyncio
async def test_cancel_manual_entry_returns_to_deciding(workflow):
    await workflow.process_receipt(PHOTO)
    workflow.begin_manual_entry()
    workflow.cancel_manual_entry()
    assert workflow.state is CaptureState.DECIDING


@pytest.mark.asyncio
async def test_rescan_deletes_draft(workflow, receipt_manager, recorded_events):
    await workflow.process_receipt(PHOTO)
    draft_id = workflow.pending.draft_id

    assert await workflow.rescan() is True

    assert await receipt_manager.get_by_id(draft_id) is None
    assert workflow.state is CaptureState.IDLE
    assert workflow.pending is None
    assert recorded_events == [('receipts-changed', {'id': draft_id, 'deleted': True})]


@pytest.mark.asyncio
async def test_double_rescan_is_harmless(workflow, receipt_manager, recorded_events):
    await workflow.process_receipt(PHOTO)

    await workflow.rescan()
    assert await workflow.rescan() is False
    assert await workflow.cancel() is False

    assert workflow.state is CaptureState.IDLE
    assert len(recorded_events) == 1
    assert await receipt_manager.list_by_user('tester') == []


@pytest.mark.asyncio
async def test_discard_draft_missing_row_is_noop(workflow):
    assert await workflow.discard_draft(999) is False
    assert await workflow.discard_draft(None) is False


@pytest.mark.asyncio
async def test_second_capture_is_ignored_while_active(workflow, receipt_manager):
    await workflow.process_receipt(PHOTO)

    assert await workflow.process_receipt(CapturedPhoto(uri='file:///tmp/receipt-2.jpg')) is None
    assert len(await receipt_manager.list_by_user('tester')) == 1


@pytest.mark.asyncio
async def test_rescan_during_ocr_drops_result(workflow, fake_ocr, receipt_manager):
    fake_ocr.text = "TOTAL 5.00"
    fake_ocr.delay = 0.1

    processing = asyncio.ensure_future(workflow.process_receipt(PHOTO))
    while workflow.state is not CaptureState.AWAITING_OCR:
        await asyncio.sleep(0.005)
    await workflow.rescan()

    assert await processing is None
    assert workflow.state is CaptureState.IDLE
    assert await receipt_manager.list_by_user('tester') == []


@pytest.mark.asyncio
async def test_draft_creation_failure_still_saves(fake_ocr, event_bus):
    store = AsyncMock()
    store.create.side_effect = [RuntimeError("disk full"), 7]
    fake_ocr.text = "TOTAL 3.50"
    workflow = CaptureWorkflow(store, fake_ocr, event_bus)

    decision = await workflow.process_receipt(PHOTO)
    assert workflow.pending.draft_id is None
    assert decision.amount == 3.5

    record = await workflow.confirm()
    assert record.id == 7
    store.update.assert_not_called()


@pytest.mark.asyncio
async def test_vanished_draft_is_recreated_on_save(workflow, fake_ocr, receipt_manager):
    fake_ocr.text = "TOTAL 8.00"
    await workflow.process_receipt(PHOTO)
    await receipt_manager.delete(workflow.pending.draft_id)

    record = await workflow.confirm()

    assert (await receipt_manager.get_by_id(record.id)).total_amount == 8.0


@pytest.mark.asyncio
async def test_save_failure_keeps_session_in_deciding(fake_ocr, event_bus, recorded_events):
    store = AsyncMock()
    store.create.return_value = 11
    store.update.side_effect = RuntimeError("database is locked")
    fake_ocr.text = "TOTAL 21.00"
    workflow = CaptureWorkflow(store, fake_ocr, event_bus)
    await workflow.process_receipt(PHOTO)
    workflow.begin_manual_entry()

    with pytest.raises(PersistenceError):
        await workflow.submit_manual_amount("22.00")

    assert workflow.state is CaptureState.DECIDING
    assert workflow.pending.draft_id == 11
    assert workflow.pending.amount == 21.0
    assert recorded_events == []


@pytest.mark.asyncio
async def test_actions_out_of_order_raise(workflow):
    with pytest.raises(WorkflowStateError):
        await workflow.confirm()
    with pytest.raises(WorkflowStateError):
        workflow.begin_manual_entry()
    with pytest.raises(WorkflowStateError):
        await workflow.run_ocr()
    assert workflow.state is CaptureState.IDLE


class SlowUpdateStore(ReceiptManager):
    async def update(self, receipt_id, fields):
        await asyncio.sleep(0.05)
        return await super().update(receipt_id, fields)


@pytest.mark.asyncio
async def test_rescan_while_saving_leaves_no_receipt(db_file, fake_ocr, event_bus):
    store = SlowUpdateStore(db_file)
    fake_ocr.text = "TOTAL 12.50"
    workflow = CaptureWorkflow(store, fake_ocr, event_bus, user_id='tester')
    await workflow.process_receipt(PHOTO)

    saving = asyncio.ensure_future(workflow.confirm())
    await asyncio.sleep(0.01)
    assert await workflow.rescan() is True

    with pytest.raises(WorkflowStateError):
        await saving
    assert await store.list_by_user('tester') == []
    assert workflow.state is CaptureState.IDLE
