"""
NSM Device Session

The engine talks to the device through a `Transport` (the real `/dev/nsm`
driver or the in-memory simulator) wrapped in a `DeviceSession`. The session
owns the transport for the duration of one run: it is opened once, every
operation goes through it, and it is released exactly once.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from . import protocol
from .api import DeviceDescription, DeviceError, ErrorCode, SessionClosedError
from .logging_config import conformance_log
from .model import RANDOM_CHUNK_SIZE, Register

logger = logging.getLogger(__name__)


class Transport(ABC):
    """A channel that carries NSM requests to a device and brings back responses."""

    name = "transport"

    @abstractmethod
    def open(self) -> None:
        """Acquire the device."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the device."""
        pass

    @abstractmethod
    def process_request(self, request: Any) -> Any:
        """Send one request value and return the decoded response value."""
        pass


class DeviceSession:
    """
    Exclusive handle on an opened device.

    Operations return the decoded result on success and raise `DeviceError`
    for any non-success status, so callers can tell "the device refused"
    apart from "the device answered".
    """

    def __init__(self, transport: Transport):
        self.transport = transport
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _request(self, request: Any) -> Any:
        if self._closed:
            raise SessionClosedError(f"session on {self.transport.name} is closed")
        logger.debug("NSM request: %r", request)
        response = self.transport.process_request(request)
        logger.debug("NSM response: %r", response)
        return response

    def describe(self) -> DeviceDescription:
        return protocol.decode_description(self._request(protocol.describe_nsm_request()))

    def describe_register(self, index: int) -> Register:
        body = protocol.decode_describe_pcr(self._request(protocol.describe_pcr_request(index)))
        return Register(index=index, lock=body.lock, value=body.data)

    def extend_register(self, index: int, data: bytes) -> bytes:
        return protocol.decode_extend_pcr(self._request(protocol.extend_pcr_request(index, data)))

    def lock_register(self, index: int) -> None:
        protocol.decode_unit(self._request(protocol.lock_pcr_request(index)), protocol.LOCK_PCR)

    def lock_registers(self, count: int) -> None:
        protocol.decode_unit(self._request(protocol.lock_pcrs_request(count)), protocol.LOCK_PCRS)

    def get_attestation(
        self,
        user_data: Optional[bytes] = None,
        nonce: Optional[bytes] = None,
        public_key: Optional[bytes] = None
    ) -> bytes:
        request = protocol.attestation_request(user_data=user_data, nonce=nonce, public_key=public_key)
        return protocol.decode_attestation(self._request(request))

    def get_random(self, length: int) -> bytes:
        """
        Fill a buffer of `length` bytes from the device entropy source.

        One request yields up to RANDOM_CHUNK_SIZE bytes, so longer buffers
        are refused before anything is sent. At most `length` bytes of the
        answer are returned, so a short answer shows up as a short sample.
        """
        if length <= 0 or length > RANDOM_CHUNK_SIZE:
            raise DeviceError(ErrorCode.INVALID_ARGUMENT, protocol.GET_RANDOM)
        random = protocol.decode_get_random(self._request(protocol.get_random_request()))
        return random[:length]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.transport.close()
        conformance_log.session_closed(self.transport.name)


@contextmanager
def open_session(transport: Transport) -> Iterator[DeviceSession]:
    """Open a session on `transport` and release it on every exit path."""
    transport.open()
    session = DeviceSession(transport)
    conformance_log.session_opened(transport.name)
    try:
        yield session
    finally:
        session.close()
