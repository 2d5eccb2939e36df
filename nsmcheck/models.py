"""
Pydantic models for device responses and suite parameters.

Response bodies are validated strictly: a field of the wrong type means the
device answered with something other than what the operation defines, which
the protocol layer reports as an invalid response.
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictBytes, StrictInt, StrictStr

from .model import RANDOM_CHUNK_SIZE


class ResponseBody(BaseModel):
    # The NSM may add fields in newer minor versions.
    model_config = ConfigDict(extra="ignore")


class DescribeNsmBody(ResponseBody):
    version_major: StrictInt = Field(ge=0)
    version_minor: StrictInt = Field(ge=0)
    version_patch: StrictInt = Field(ge=0)
    module_id: StrictStr
    max_pcrs: StrictInt = Field(ge=0)
    locked_pcrs: List[StrictInt] = Field(default_factory=list)
    digest: StrictStr


class DescribePcrBody(ResponseBody):
    lock: StrictBool
    data: StrictBytes


class ExtendPcrBody(ResponseBody):
    data: StrictBytes


class AttestationBody(ResponseBody):
    document: StrictBytes


class GetRandomBody(ResponseBody):
    random: StrictBytes


class SuiteParameters(BaseModel):
    """Knobs of the conformance suite; defaults are the contract values."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    extend_rounds: int = Field(default=10, ge=1)
    read_rounds: int = Field(default=10, ge=1)
    relock_attempts: int = Field(default=2, ge=1)
    random_samples: int = Field(default=16, ge=2)
    random_length: int = Field(default=RANDOM_CHUNK_SIZE, ge=1, le=RANDOM_CHUNK_SIZE)
    attestation_data_len: int = Field(default=1024, ge=1, le=1024)
    max_document_size: int = Field(default=16384, ge=1)
    extend_input: bytes = Field(default=b"\x01\x02\x03", min_length=1)
    attest_at_boot: bool = True
