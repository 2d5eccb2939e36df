"""
NSM Wire Protocol

Requests and responses exchanged with the NSM are externally tagged CBOR
values. Operations without arguments are bare strings ("DescribeNSM"),
operations with arguments are single-key maps ({"DescribePCR": {"index": 3}}).
Responses follow the same shape, with {"Error": "<status>"} for failures and
a bare string ("LockPCR") for operations that return nothing.

This module builds request values and decodes response values; encoding to
CBOR bytes is the transport's concern.
"""

from typing import Any, Optional, Type

from pydantic import ValidationError

from .api import DeviceDescription, DeviceError, ErrorCode
from .models import (
    AttestationBody,
    DescribeNsmBody,
    DescribePcrBody,
    ExtendPcrBody,
    GetRandomBody,
    ResponseBody,
)

DESCRIBE_NSM = "DescribeNSM"
DESCRIBE_PCR = "DescribePCR"
EXTEND_PCR = "ExtendPCR"
LOCK_PCR = "LockPCR"
LOCK_PCRS = "LockPCRs"
ATTESTATION = "Attestation"
GET_RANDOM = "GetRandom"
ERROR = "Error"


# ============================================================
# Requests
# ============================================================

def describe_nsm_request() -> Any:
    return DESCRIBE_NSM


def describe_pcr_request(index: int) -> Any:
    return {DESCRIBE_PCR: {"index": index}}


def extend_pcr_request(index: int, data: bytes) -> Any:
    return {EXTEND_PCR: {"index": index, "data": bytes(data)}}


def lock_pcr_request(index: int) -> Any:
    return {LOCK_PCR: {"index": index}}


def lock_pcrs_request(range_: int) -> Any:
    return {LOCK_PCRS: {"range": range_}}


def attestation_request(
    user_data: Optional[bytes] = None,
    nonce: Optional[bytes] = None,
    public_key: Optional[bytes] = None
) -> Any:
    return {
        ATTESTATION: {
            "user_data": user_data,
            "nonce": nonce,
            "public_key": public_key,
        }
    }


def get_random_request() -> Any:
    return GET_RANDOM


# ============================================================
# Responses
# ============================================================

def raise_for_error(response: Any, operation: str) -> None:
    """
    Raise DeviceError if the response is an error response.

    An error response carrying the success status is malformed and is
    reported as an invalid response.
    """
    if isinstance(response, dict) and len(response) == 1 and ERROR in response:
        code = ErrorCode.from_wire(response[ERROR])
        if code == ErrorCode.SUCCESS:
            code = ErrorCode.INVALID_RESPONSE
        raise DeviceError(code, operation)


def decode_unit(response: Any, operation: str) -> None:
    """Decode the response of an operation that returns no data."""
    raise_for_error(response, operation)
    if response != operation:
        raise DeviceError(ErrorCode.INVALID_RESPONSE, operation)


def decode_body(response: Any, operation: str, model: Type[ResponseBody]) -> ResponseBody:
    """Decode and validate the body of a response tagged with `operation`."""
    raise_for_error(response, operation)
    if not isinstance(response, dict) or list(response.keys()) != [operation]:
        raise DeviceError(ErrorCode.INVALID_RESPONSE, operation)
    try:
        return model.model_validate(response[operation])
    except ValidationError:
        raise DeviceError(ErrorCode.INVALID_RESPONSE, operation) from None


def decode_description(response: Any) -> DeviceDescription:
    body = decode_body(response, DESCRIBE_NSM, DescribeNsmBody)
    return DeviceDescription(
        version_major=body.version_major,
        version_minor=body.version_minor,
        version_patch=body.version_patch,
        module_id=body.module_id,
        max_pcrs=body.max_pcrs,
        digest=body.digest,
        locked_pcrs=tuple(body.locked_pcrs),
    )


def decode_describe_pcr(response: Any) -> DescribePcrBody:
    return decode_body(response, DESCRIBE_PCR, DescribePcrBody)


def decode_extend_pcr(response: Any) -> bytes:
    return decode_body(response, EXTEND_PCR, ExtendPcrBody).data


def decode_attestation(response: Any) -> bytes:
    return decode_body(response, ATTESTATION, AttestationBody).document


def decode_get_random(response: Any) -> bytes:
    return decode_body(response, GET_RANDOM, GetRandomBody).random
