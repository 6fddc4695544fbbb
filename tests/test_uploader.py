import threading

import pytest
import requests
import responses

from storytape.api import CloudClient
from storytape.book import Book
from storytape.pairing import Pairing
from storytape.prefs import Preferences
from storytape.recorder import AudioState, Chunk, Recorder
from storytape.uploader import (
    NOTHING_UPLOADED,
    UPLOAD_FAILURE_LIMIT,
    UploadError,
    Uploader,
)

BASE = "https://cloud.example.com"
UPLOAD_URL = BASE + "/functions/v1/upload_chunk"
FINALIZE_URL = BASE + "/functions/v1/finalize_recording"


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


class FakeWifi:
    def __init__(self, connected=True, connect_result=False):
        self.connected = connected
        self.connect_result = connect_result
        self.attempts = []

    def is_connected(self):
        return self.connected

    def connect(self, ssid, password, timeout):
        self.attempts.append(ssid)
        if self.connect_result:
            self.connected = True
        return self.connect_result


def make(wifi=None):
    password = "password"
    prefs = Preferences(None)
    pairing = Pairing(prefs, 0, token_factory=lambda: bytes(16))
    pairing.begin()
    pairing.store_credentials("homenet", password, "backupnet", password, "acct-1")
    book = Book(prefs)
    book.load()
    recorder = Recorder(chunk_bytes=8, warmup_bytes=0)
    client = CloudClient(BASE, "placeholder")
    uploader = Uploader(client, recorder, pairing, book, wifi or FakeWifi())
    return uploader, recorder, pairing


def test_upload_chunk_sends_body_and_headers(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=200)
    uploader, recorder, pairing = make()
    recorder.start()
    uploader.upload_chunk(Chunk(b"\x01\x02\x03\x04", 7))
    request = rsps.calls[0].request
    assert request.body == b"\x01\x02\x03\x04"
    assert request.headers["x-chunk-idx"] == "7"
    assert request.headers["x-session-id"] == recorder.session_id()
    assert request.headers["x-hardware-id"] == pairing.device_id()
    assert request.headers["x-pair-token"] == pairing.token_hex()
    assert request.headers["Content-Type"] == "application/octet-stream"


def test_upload_chunk_404_message(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=404)
    uploader, recorder, _ = make()
    recorder.start()
    with pytest.raises(UploadError, match="server 404"):
        uploader.upload_chunk(Chunk(b"\x00\x00", 0))
    assert uploader.last_error() == "Cloud upload not enabled yet (server 404)"


def test_upload_chunk_rejected_message(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=500)
    uploader, recorder, _ = make()
    recorder.start()
    with pytest.raises(UploadError):
        uploader.upload_chunk(Chunk(b"\x00\x00", 0))
    assert uploader.last_error() == "Upload rejected (HTTP 500)"


def test_upload_chunk_network_error(rsps):
    rsps.add(responses.POST, UPLOAD_URL, body=requests.ConnectionError("down"))
    uploader, recorder, _ = make()
    recorder.start()
    with pytest.raises(UploadError):
        uploader.upload_chunk(Chunk(b"\x00\x00", 0))
    assert uploader.last_error().startswith("Network error:")


def test_step_uploads_ready_chunk(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=200)
    uploader, recorder, _ = make()
    recorder.start()
    recorder.feed(bytes(8))
    assert uploader.step() == 0.0
    assert uploader.chunks_uploaded() == 1
    assert recorder.take_chunk() is None


def test_repeated_failures_force_stop(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=500)
    uploader, recorder, _ = make()
    recorder.start()
    delays = []
    for _ in range(UPLOAD_FAILURE_LIMIT):
        recorder.feed(bytes(8))
        delays.append(uploader.step())
    assert set(delays) == {2.0}
    assert recorder.state() is AudioState.ERROR
    assert recorder.last_error() == "upload failures exceeded threshold"
    assert uploader.chunks_uploaded() == 0


def test_finalize_after_partial_chunk(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=200)
    rsps.add(responses.POST, FINALIZE_URL, status=200, body="{}")
    uploader, recorder, pairing = make()
    recorder.start()
    recorder.feed(bytes(4))
    recorder.stop()
    uploader.request_finalize(3, 0)
    assert uploader.step() == 0.05
    recorder.finish_capture()
    uploader.step()
    assert uploader.chunks_uploaded() == 1
    uploader.step()
    assert recorder.state() is AudioState.COMPLETE
    request = rsps.calls[-1].request
    assert request.url == FINALIZE_URL
    assert request.headers["x-duration"] == "3"
    assert request.headers["x-chapter"] == "0"
    assert request.headers["x-book-name"] == "My Stories"
    assert request.headers["x-chapter-name"] == "Chapter 1"
    assert request.headers["x-acct"] == pairing.credentials().acct


def test_nothing_uploaded_completes_with_error(rsps):
    uploader, recorder, _ = make()
    recorder.start()
    recorder.stop()
    recorder.finish_capture()
    uploader.request_finalize(0, 0)
    uploader.step()
    assert recorder.state() is AudioState.COMPLETE
    assert uploader.last_error() == NOTHING_UPLOADED
    assert len(rsps.calls) == 0


def test_finalize_failure_retries(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=200)
    rsps.add(responses.POST, FINALIZE_URL, status=500)
    uploader, recorder, _ = make()
    recorder.start()
    recorder.feed(bytes(4))
    recorder.stop()
    recorder.finish_capture()
    uploader.request_finalize(1, 0)
    uploader.step()
    assert uploader.step() == 3.0
    assert recorder.state() is AudioState.FINALIZING
    assert uploader.last_error() == "finalize HTTP 500"


def test_wifi_down_tries_both_networks_and_force_stops():
    wifi = FakeWifi(connected=False)
    uploader, recorder, _ = make(wifi)
    recorder.start()
    assert uploader.step() == 0.5
    assert wifi.attempts == ["homenet", "backupnet"]
    for _ in range(UPLOAD_FAILURE_LIMIT - 1):
        uploader.step()
    assert recorder.state() is AudioState.ERROR
    assert recorder.last_error() == "WiFi disconnected"


def test_wifi_reconnect_succeeds():
    wifi = FakeWifi(connected=False, connect_result=True)
    uploader, recorder, _ = make(wifi)
    recorder.start()
    assert uploader.step() == 0.0
    assert wifi.attempts == ["homenet"]
    assert recorder.state() is AudioState.RECORDING


def test_reset_clears_counters(rsps):
    rsps.add(responses.POST, UPLOAD_URL, status=500)
    uploader, recorder, _ = make()
    recorder.start()
    recorder.feed(bytes(8))
    uploader.step()
    assert uploader.last_error() == "Upload rejected (HTTP 500)"
    uploader.reset()
    assert uploader.last_error() == ""
    assert uploader.chunks_uploaded() == 0


def test_idle_step_delay():
    uploader, _, _ = make()
    assert uploader.step() == 0.2


def test_run_stops_on_event():
    stop = threading.Event()

    class StoppingWifi(FakeWifi):
        def is_connected(self):
            self.attempts.append("check")
            stop.set()
            return True

    wifi = StoppingWifi()
    uploader, _, _ = make(wifi)
    uploader.run(stop)
    assert wifi.attempts == ["check"]