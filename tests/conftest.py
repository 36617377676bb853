"""Shared fixtures for the SkyLink test suite."""

import socket

import pytest


def _multipart(
    filename: str | None,
    payload: bytes,
    content_type: str | None = "text/plain",
    boundary: str = "----SkyLinkBoundary7MA4YWxkTrZu0gW",
    fields: dict[str, str] | None = None,
) -> bytes:
    """Build a multipart/form-data body with one file part."""
    delimiter = f"--{boundary}".encode()
    parts = []
    for name, value in (fields or {}).items():
        parts.append(
            delimiter + b"\r\n"
            + f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode()
            + value.encode() + b"\r\n"
        )

    disposition = 'Content-Disposition: form-data; name="file"'
    if filename is not None:
        disposition += f'; filename="{filename}"'
    headers = disposition + "\r\n"
    if content_type is not None:
        headers += f"Content-Type: {content_type}\r\n"
    parts.append(delimiter + b"\r\n" + headers.encode() + b"\r\n" + payload + b"\r\n")

    return b"".join(parts) + delimiter + b"--\r\n"


@pytest.fixture
def multipart_body():
    return _multipart


@pytest.fixture
def free_port() -> int:
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeListener:
    """Stands in for TransferListener where no socket is wanted."""

    instances: list["FakeListener"] = []
    fail_opens = 0

    def __init__(self, registry, port):
        self.registry = registry
        self.port = port
        self.served = False
        FakeListener.instances.append(self)

    async def open(self):
        if FakeListener.fail_opens > 0:
            FakeListener.fail_opens -= 1
            raise OSError(98, "Address already in use")

    async def serve_once(self):
        self.served = True
        return True


@pytest.fixture
def fake_listener():
    FakeListener.instances = []
    FakeListener.fail_opens = 0
    return FakeListener
