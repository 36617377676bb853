"""
Tests for gate.py — upload validation, staging and offer creation.
"""

import asyncio

import pytest

from skylink.security.ratelimit import RateLimiter
from skylink.transfer.errors import (
    BadUpload,
    PayloadTooLarge,
    RateLimited,
    TransferIOError,
    UnsupportedMediaType,
)
from skylink.transfer.gate import UploadGate, is_allowed_extension, is_allowed_mime_type
from skylink.transfer.registry import OfferRegistry

BOUNDARY = "XyZBoundary"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


async def chunks(data: bytes, size: int = 1000):
    for i in range(0, len(data), size):
        yield data[i:i + size]


class Untouchable:
    """A request body that fails the test if anyone reads it."""

    def __init__(self):
        self.read = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        self.read = True
        raise AssertionError("body must not be read")


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def gate(upload_dir, fake_listener):
    return UploadGate(
        OfferRegistry(),
        RateLimiter(limit=10, window=60),
        upload_dir=str(upload_dir),
        listener_factory=fake_listener,
    )


def admit(gate, body: bytes, content_type=CONTENT_TYPE, content_length="auto", host="10.0.0.7"):
    if content_length == "auto":
        content_length = str(len(body))

    async def scenario():
        ticket = await gate.admit(host, content_type, content_length, chunks(body))
        await asyncio.sleep(0)  # let the listener task run
        return ticket

    return asyncio.run(scenario())


class TestAllowlists:
    @pytest.mark.parametrize("name", ["a.txt", "A.PDF", "x.jpeg", "y.docx", "z.csv", "arch.zip"])
    def test_allowed_extensions(self, name):
        assert is_allowed_extension(name)

    @pytest.mark.parametrize("name", ["malware.exe", "script.sh", "noext", "a.txt.exe"])
    def test_rejected_extensions(self, name):
        assert not is_allowed_extension(name)

    def test_mime_prefix_match(self):
        assert is_allowed_mime_type("text/plain; charset=utf-8")
        assert is_allowed_mime_type("IMAGE/PNG")
        assert not is_allowed_mime_type("application/x-msdownload")
        assert not is_allowed_mime_type(None)


class TestAdmit:
    def test_success_stages_file_and_starts_listener(self, gate, upload_dir, fake_listener, multipart_body):
        body = multipart_body("hello.txt", b"0123456789", "text/plain", BOUNDARY)
        ticket = admit(gate, body)

        registry = gate._registry
        assert registry.resolve_token(ticket.token) == ticket.port
        offer = registry.offer_of(ticket.port)
        assert offer.file_name == "hello.txt"
        assert offer.uploader_host == "10.0.0.7"

        staged = list(upload_dir.iterdir())
        assert len(staged) == 1
        assert staged[0].name.endswith("_hello.txt")
        assert staged[0].read_bytes() == b"0123456789"
        assert str(staged[0]) == offer.file_path

        assert [l.port for l in fake_listener.instances] == [ticket.port]
        assert fake_listener.instances[0].served

    def test_path_components_are_discarded(self, gate, upload_dir, multipart_body):
        body = multipart_body("../../etc/evil.txt", b"x", "text/plain", BOUNDARY)
        ticket = admit(gate, body)
        staged = list(upload_dir.iterdir())
        assert len(staged) == 1 and staged[0].name.endswith("_evil.txt")
        assert gate._registry.offer_of(ticket.port).file_name == "evil.txt"

    def test_empty_filename_gets_default(self, gate, multipart_body):
        body = multipart_body("", b"x", "text/plain", BOUNDARY)
        ticket = admit(gate, body)
        assert gate._registry.offer_of(ticket.port).file_name == "default.txt"

    def test_disallowed_extension_is_rejected_before_writing(self, gate, upload_dir, fake_listener, multipart_body):
        body = multipart_body("malware.exe", b"MZ\x90\x00", "application/octet-stream", BOUNDARY)
        with pytest.raises(UnsupportedMediaType):
            admit(gate, body)
        assert list(upload_dir.iterdir()) == []
        assert len(gate._registry) == 0
        assert fake_listener.instances == []

    def test_disallowed_mime_type(self, gate, upload_dir, multipart_body):
        body = multipart_body("page.txt", b"<html>", "text/html", BOUNDARY)
        with pytest.raises(UnsupportedMediaType):
            admit(gate, body)
        assert list(upload_dir.iterdir()) == []

    def test_missing_part_content_type(self, gate, multipart_body):
        body = multipart_body("a.txt", b"x", None, BOUNDARY)
        with pytest.raises(UnsupportedMediaType):
            admit(gate, body)

    @pytest.mark.parametrize("content_type", [None, "", "application/json", "text/plain"])
    def test_requires_multipart(self, gate, content_type):
        body = Untouchable()
        with pytest.raises(BadUpload):
            asyncio.run(gate.admit("h", content_type, "10", body))
        assert not body.read

    def test_requires_boundary(self, gate):
        body = Untouchable()
        with pytest.raises(BadUpload):
            asyncio.run(gate.admit("h", "multipart/form-data", "10", body))
        assert not body.read

    def test_invalid_content_length(self, gate):
        with pytest.raises(BadUpload):
            asyncio.run(gate.admit("h", CONTENT_TYPE, "lots", Untouchable()))

    def test_unparsable_body(self, gate):
        with pytest.raises(BadUpload):
            admit(gate, b"this is not multipart at all")


class TestSizeLimits:
    def test_declared_length_rejected_without_reading_body(self, upload_dir, fake_listener):
        gate = UploadGate(OfferRegistry(), upload_dir=str(upload_dir), max_file_size=1024,
                          listener_factory=fake_listener)
        body = Untouchable()
        with pytest.raises(PayloadTooLarge):
            asyncio.run(gate.admit("h", CONTENT_TYPE, "1025", body))
        assert not body.read

    def test_streamed_body_over_limit(self, upload_dir, fake_listener, multipart_body):
        gate = UploadGate(OfferRegistry(), upload_dir=str(upload_dir), max_file_size=1024,
                          listener_factory=fake_listener)
        body = multipart_body("big.txt", b"x" * 4096, "text/plain", BOUNDARY)
        consumed = []

        async def tracked():
            async for chunk in chunks(body, 256):
                consumed.append(len(chunk))
                yield chunk

        with pytest.raises(PayloadTooLarge):
            # no Content-Length, as with chunked transfer encoding
            asyncio.run(gate.admit("h", CONTENT_TYPE, None, tracked()))
        assert sum(consumed) < len(body)
        assert list(upload_dir.iterdir()) == []

    def test_payload_over_limit_after_parsing(self, upload_dir, fake_listener, multipart_body, monkeypatch):
        gate = UploadGate(OfferRegistry(), upload_dir=str(upload_dir), max_file_size=1024,
                          listener_factory=fake_listener)
        body = multipart_body("f.txt", b"x" * 1025, "text/plain", BOUNDARY)

        # simulate a body reader that under-counted what it buffered
        async def read_body(_):
            return body

        monkeypatch.setattr(gate, "_read_body", read_body)
        with pytest.raises(PayloadTooLarge):
            asyncio.run(gate.admit("h", CONTENT_TYPE, "1000", chunks(b"")))
        assert list(upload_dir.iterdir()) == []


class TestRateLimit:
    def test_eleventh_upload_in_window(self, upload_dir, fake_listener, multipart_body):
        now = [1000.0]
        gate = UploadGate(
            OfferRegistry(),
            RateLimiter(limit=10, window=60, clock=lambda: now[0]),
            upload_dir=str(upload_dir),
            listener_factory=fake_listener,
        )
        body = multipart_body("a.txt", b"x", "text/plain", BOUNDARY)

        for _ in range(10):
            admit(gate, body, host="192.168.1.9")
        with pytest.raises(RateLimited):
            admit(gate, body, host="192.168.1.9")

        # other addresses are unaffected
        admit(gate, body, host="192.168.1.10")

        now[0] += 61
        ticket = admit(gate, body, host="192.168.1.9")
        assert gate._registry.is_occupied(ticket.port)


class TestListenerStartup:
    def test_bind_failure_retries_with_new_port(self, gate, upload_dir, fake_listener, multipart_body):
        fake_listener.fail_opens = 2
        body = multipart_body("a.txt", b"x", "text/plain", BOUNDARY)
        ticket = admit(gate, body)

        assert len(fake_listener.instances) == 3
        assert len(gate._registry) == 1
        assert gate._registry.is_occupied(ticket.port)
        assert len(list(upload_dir.iterdir())) == 1

    def test_bind_failure_exhausted(self, gate, upload_dir, fake_listener, multipart_body):
        fake_listener.fail_opens = 1000
        body = multipart_body("a.txt", b"x", "text/plain", BOUNDARY)
        with pytest.raises(TransferIOError):
            admit(gate, body)
        assert len(gate._registry) == 0
        assert list(upload_dir.iterdir()) == []

    def test_disk_failure(self, gate, upload_dir, multipart_body):
        upload_dir.rmdir()
        body = multipart_body("a.txt", b"x", "text/plain", BOUNDARY)
        with pytest.raises(TransferIOError):
            admit(gate, body)
        assert len(gate._registry) == 0

    def test_partial_write_is_removed(self, gate, upload_dir, multipart_body, monkeypatch):
        def write_then_fail(path, payload):
            with open(path, "wb") as f:
                f.write(payload[:1])
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(gate, "_write_file", write_then_fail)
        body = multipart_body("a.txt", b"xyz", "text/plain", BOUNDARY)
        with pytest.raises(TransferIOError):
            admit(gate, body)
        assert list(upload_dir.iterdir()) == []
        assert len(gate._registry) == 0
