"""
NSM Driver Transport

Talks to the Nitro Secure Module through its device file. A message holds
two `iovec`s: the CBOR-encoded request, and a response buffer that the
driver fills and shrinks to the length of the CBOR-encoded response. The
message is exchanged with a single read/write `ioctl()`.
"""

import ctypes
import errno
import fcntl
import logging
import os
from typing import Any, Optional

import cbor2
from ioctl_opt import IOC, IOC_READ, IOC_WRITE

from .api import DeviceUnavailableError, ErrorCode, SessionClosedError
from .device import Transport
from .protocol import ERROR

logger = logging.getLogger(__name__)

DEV_FILE = "/dev/nsm"
NSM_IOCTL_MAGIC = 0x0A
NSM_REQUEST_MAX_SIZE = 0x1000
NSM_RESPONSE_MAX_SIZE = 0x3000


class IOVec(ctypes.Structure):
    _fields_ = [
        ('iov_base', ctypes.c_void_p),
        ('iov_len', ctypes.c_size_t),
    ]


class NsmMessage(ctypes.Structure):
    """Message shared with the driver via `ioctl()`."""
    _fields_ = [
        ('request', IOVec),
        ('response', IOVec),
    ]


NSM_IOCTL_REQUEST = IOC(IOC_READ | IOC_WRITE, NSM_IOCTL_MAGIC, 0, ctypes.sizeof(NsmMessage))


def error_response(code: ErrorCode) -> Any:
    return {ERROR: code.value}


class NsmDriver(Transport):
    """Transport over the NSM device file."""

    name = "nsm-driver"

    def __init__(self, path: str = DEV_FILE):
        self.path = path
        self._fd: Optional[int] = None

    def open(self) -> None:
        try:
            self._fd = os.open(self.path, os.O_RDWR)
        except OSError as e:
            logger.error("Device file '%s' failed to open: %s", self.path, e)
            raise DeviceUnavailableError(self.path, str(e)) from e
        logger.debug("Device file '%s' opened successfully.", self.path)

    def close(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.close(fd)
        except OSError as e:
            logger.error("File of descriptor %d failed to close: %s", fd, e)
            return
        logger.debug("File of descriptor %d closed successfully.", fd)

    def process_request(self, request: Any) -> Any:
        """
        Encode a request, exchange it with the driver and decode the response.

        Transport failures are reported the way the device reports its own
        failures, as an error response, so the session sees a single shape.
        """
        if self._fd is None:
            raise SessionClosedError(f"device file '{self.path}' is not open")

        encoded = cbor2.dumps(request)
        if len(encoded) > NSM_REQUEST_MAX_SIZE:
            return error_response(ErrorCode.INPUT_TOO_LARGE)

        request_buffer = ctypes.create_string_buffer(encoded, len(encoded))
        response_buffer = (ctypes.c_uint8 * NSM_RESPONSE_MAX_SIZE)()
        message = NsmMessage(
            request=IOVec(ctypes.cast(request_buffer, ctypes.c_void_p), len(encoded)),
            response=IOVec(ctypes.cast(response_buffer, ctypes.c_void_p), NSM_RESPONSE_MAX_SIZE),
        )

        try:
            fcntl.ioctl(self._fd, NSM_IOCTL_REQUEST, message)
        except OSError as e:
            logger.error("NSM ioctl failed: %s", e)
            if e.errno == errno.EMSGSIZE:
                return error_response(ErrorCode.INPUT_TOO_LARGE)
            return error_response(ErrorCode.INTERNAL_ERROR)

        length = min(message.response.iov_len, NSM_RESPONSE_MAX_SIZE)
        try:
            return cbor2.loads(ctypes.string_at(response_buffer, length))
        except cbor2.CBORDecodeError as e:
            logger.error("NSM response could not be decoded: %s", e)
            return error_response(ErrorCode.INTERNAL_ERROR)
