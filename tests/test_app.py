import asyncio

import pytest
from fastapi.testclient import TestClient

import stocklens.app as app_module
from stocklens.cache import TimeSeriesCache
from stocklens.database import DatabaseManager
from stocklens.events import RECEIPTS_CHANGED, EventBus
from stocklens.managers import ReceiptManager
from stocklens.market_data import PriceHistoryService
from stocklens.projections import ProjectionService
from stocklens.workflow import CaptureWorkflow

RECEIPT_UPLOAD = {'file': ('receipt.jpg', b'fake-jpeg', 'image/jpeg')}


@pytest.fixture
def client(tmp_path, monkeypatch, fake_ocr, fake_fetcher):
    db_file = str(tmp_path / 'api.db')
    bus = EventBus()
    receipts = ReceiptManager(db_file)
    history = PriceHistoryService(TimeSeriesCache(db_file), fetcher=fake_fetcher,
                                  event_bus=bus, prefetch_tickers=())

    monkeypatch.setattr(app_module.config, 'UPLOAD_DIR', str(tmp_path / 'uploads'))
    monkeypatch.setattr(app_module, 'event_bus', bus)
    monkeypatch.setattr(app_module, 'db_manager', DatabaseManager(db_file))
    monkeypatch.setattr(app_module, 'receipt_manager', receipts)
    monkeypatch.setattr(app_module, 'history_service', history)
    monkeypatch.setattr(app_module, 'projection_service', ProjectionService(history))
    monkeypatch.setattr(app_module, 'workflow', CaptureWorkflow(receipts, fake_ocr, bus))

    with TestClient(app_module.app) as test_client:
        yield test_client


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'healthy'


def test_capture_and_confirm(client, fake_ocr, tmp_path):
    fake_ocr.text = "GROCER\nTOTAL £45.67"

    response = client.post('/capture', files=RECEIPT_UPLOAD)

    assert response.status_code == 200
    body = response.json()
    assert body['state'] == 'deciding'
    assert body['decision']['kind'] == 'amount_found'
    assert body['amount'] == 45.67
    assert len(list((tmp_path / 'uploads').iterdir())) == 1

    confirmed = client.post('/capture/confirm')
    assert confirmed.status_code == 200
    assert confirmed.json()['total_amount'] == 45.67

    receipts = client.get('/receipts').json()
    assert [receipt['total_amount'] for receipt in receipts] == [45.67]
    assert client.get('/capture').json()['state'] == 'idle'


def test_second_capture_conflicts(client):
    client.post('/capture', files=RECEIPT_UPLOAD)
    assert client.post('/capture', files=RECEIPT_UPLOAD).status_code == 409


def test_non_image_upload_rejected(client):
    response = client.post('/capture', files={'file': ('notes.txt', b'hello', 'text/plain')})
    assert response.status_code == 400


def test_manual_entry_flow(client, fake_ocr):
    fake_ocr.text = "TOTAL 999999.00"
    decision = client.post('/capture', files=RECEIPT_UPLOAD).json()['decision']
    assert decision['kind'] == 'invalid_amount'
    assert decision['options'] == ['manual', 'rescan']

    assert client.post('/capture/confirm').status_code == 409
    assert client.post('/capture/manual/begin').json()['state'] == 'manual_entry'
    assert client.post('/capture/manual', data={'amount': 'abc'}).status_code == 400

    saved = client.post('/capture/manual', data={'amount': '99.90'})
    assert saved.status_code == 200
    assert saved.json()['total_amount'] == 99.9


def test_rescan_removes_draft(client):
    client.post('/capture', files=RECEIPT_UPLOAD)

    first = client.post('/capture/rescan').json()
    second = client.post('/capture/rescan').json()

    assert first == {'state': 'idle', 'draft_removed': True}
    assert second == {'state': 'idle', 'draft_removed': False}
    assert client.get('/receipts').json() == []


def test_receipt_not_found(client):
    assert client.get('/receipts/999').status_code == 404
    assert client.delete('/receipts/999').status_code == 404


def test_update_receipt_validates_amount(client):
    client.post('/capture', files=RECEIPT_UPLOAD)
    receipt_id = client.post('/capture/confirm').json()['id']

    assert client.put(f'/receipts/{receipt_id}', data={'total_amount': '-5'}).status_code == 400
    assert client.put(f'/receipts/{receipt_id}', data={'total_amount': '12.5'}).status_code == 200
    assert client.get(f'/receipts/{receipt_id}').json()['total_amount'] == 12.5


def test_projection_for_unknown_ticker_uses_default(client):
    response = client.get('/projection/UNKNOWNTICKER', params={'principal': 100, 'years': 5})

    assert response.status_code == 200
    body = response.json()
    assert body['source'] == 'default'
    assert body['future_value'] > 100


def test_projections_for_presets(client):
    body = client.get('/projections', params={'principal': 10, 'years': 3}).json()
    assert len(body) == 10
    assert all(projection['source'] == 'preset' for projection in body.values())


def test_presets_listing(client):
    presets = client.get('/presets').json()
    assert {'name': 'NVIDIA', 'ticker': 'NVDA', 'return_rate': 0.26} in presets


def test_cache_maintenance_endpoints(client):
    assert client.post('/cache/prune').json() == {'removed': 0}
    assert client.post('/cache/prefetch').status_code == 200


def uploads(tmp_path):
    return list((tmp_path / 'uploads').iterdir())


def test_busy_capture_does_not_store_upload(client, tmp_path):
    client.post('/capture', files=RECEIPT_UPLOAD)

    assert client.post('/capture', files=RECEIPT_UPLOAD).status_code == 409
    assert len(uploads(tmp_path)) == 1


def test_rescan_and_cancel_delete_upload(client, tmp_path):
    client.post('/capture', files=RECEIPT_UPLOAD)
    client.post('/capture/rescan')
    assert uploads(tmp_path) == []

    client.post('/capture', files=RECEIPT_UPLOAD)
    client.post('/capture/cancel')
    assert uploads(tmp_path) == []


class RescanningOCR:
    """Rescans through the API while its OCR call is still running."""

    async def recognize(self, photo):
        await app_module.rescan_capture()
        return "TOTAL 5.00"


def test_capture_discarded_during_ocr_is_gone(client, tmp_path):
    app_module.workflow.ocr = RescanningOCR()

    response = client.post('/capture', files=RECEIPT_UPLOAD)

    assert response.status_code == 410
    assert response.json()['detail'] == "Capture was discarded before OCR finished"
    assert uploads(tmp_path) == []
    assert client.get('/receipts').json() == []
    assert client.get('/capture').json()['state'] == 'idle'


def test_receipt_edits_publish_changes(client, tmp_path):
    events = []
    app_module.event_bus.subscribe(RECEIPTS_CHANGED, events.append)
    client.post('/capture', files=RECEIPT_UPLOAD)
    receipt_id = client.post('/capture/confirm').json()['id']
    events.clear()

    client.put(f'/receipts/{receipt_id}', data={'total_amount': '3.25'})
    client.post(f'/receipts/{receipt_id}/synced')
    client.delete(f'/receipts/{receipt_id}')

    assert events == [{'id': receipt_id}, {'id': receipt_id}, {'id': receipt_id, 'deleted': True}]
    assert uploads(tmp_path) == []


def test_remove_upload_ignores_paths_outside_upload_dir(client, tmp_path):
    outside = tmp_path / 'keep.jpg'
    outside.write_bytes(b'jpeg')

    asyncio.run(app_module.remove_upload(f"file://{outside}"))

    assert outside.exists()


def test_blank_owner_on_update_is_left_unchanged(client):
    client.post('/capture', files=RECEIPT_UPLOAD)
    receipt_id = client.post('/capture/confirm').json()['id']

    response = client.put(f'/receipts/{receipt_id}', data={'total_amount': '4.75', 'user_id': '  '})

    assert response.status_code == 200
    receipt = client.get(f'/receipts/{receipt_id}').json()
    assert receipt['user_id'] == 'anon'
    assert receipt['total_amount'] == 4.75
