"""
Wire Protocol Tests

Request shapes and response decoding, including the mapping of error
responses and malformed responses onto DeviceError.
"""

import unittest

from nsmcheck import DeviceError, ErrorCode
from nsmcheck import protocol


class TestRequests(unittest.TestCase):

    def test_operations_without_arguments_are_bare_strings(self):
        self.assertEqual(protocol.describe_nsm_request(), "DescribeNSM")
        self.assertEqual(protocol.get_random_request(), "GetRandom")

    def test_operations_with_arguments_are_tagged_maps(self):
        self.assertEqual(protocol.describe_pcr_request(3), {"DescribePCR": {"index": 3}})
        self.assertEqual(protocol.lock_pcr_request(16), {"LockPCR": {"index": 16}})
        self.assertEqual(protocol.lock_pcrs_request(32), {"LockPCRs": {"range": 32}})
        self.assertEqual(
            protocol.extend_pcr_request(20, bytearray(b"\x01\x02")),
            {"ExtendPCR": {"index": 20, "data": b"\x01\x02"}}
        )

    def test_attestation_carries_absent_inputs_as_none(self):
        request = protocol.attestation_request(nonce=b"n")
        self.assertEqual(
            request,
            {"Attestation": {"user_data": None, "nonce": b"n", "public_key": None}}
        )


class TestErrorResponses(unittest.TestCase):

    def test_error_response_raises_device_error(self):
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_unit({"Error": "ReadOnlyIndex"}, protocol.LOCK_PCR)
        self.assertEqual(ctx.exception.code, ErrorCode.READ_ONLY_INDEX)
        self.assertEqual(ctx.exception.operation, "LockPCR")

    def test_unknown_status_is_internal_error(self):
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_extend_pcr({"Error": "SomethingNew"})
        self.assertEqual(ctx.exception.code, ErrorCode.INTERNAL_ERROR)

    def test_error_response_with_success_status_is_invalid(self):
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_unit({"Error": "Success"}, protocol.LOCK_PCR)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_get_random({"Error": "Success"})
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)

    def test_every_wire_status_round_trips(self):
        for code in ErrorCode:
            self.assertIs(ErrorCode.from_wire(code.value), code)
            self.assertTrue(code.describe())


class TestUnitResponses(unittest.TestCase):

    def test_matching_unit_response(self):
        self.assertIsNone(protocol.decode_unit("LockPCR", protocol.LOCK_PCR))
        self.assertIsNone(protocol.decode_unit("LockPCRs", protocol.LOCK_PCRS))

    def test_mismatched_unit_response_is_invalid(self):
        for response in ("LockPCRs", {"LockPCR": {}}, None):
            with self.assertRaises(DeviceError) as ctx:
                protocol.decode_unit(response, protocol.LOCK_PCR)
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)


class TestBodyResponses(unittest.TestCase):

    def describe_response(self, **overrides):
        body = {
            "version_major": 1,
            "version_minor": 2,
            "version_patch": 3,
            "module_id": "i-0123-enc4567",
            "max_pcrs": 32,
            "locked_pcrs": list(range(16)),
            "digest": "SHA384",
        }
        body.update(overrides)
        return {"DescribeNSM": body}

    def test_decode_description(self):
        description = protocol.decode_description(self.describe_response())
        self.assertEqual(description.version, (1, 2, 3))
        self.assertEqual(description.module_id, "i-0123-enc4567")
        self.assertEqual(description.max_pcrs, 32)
        self.assertEqual(description.locked_pcrs, tuple(range(16)))
        self.assertEqual(description.digest, "SHA384")
        self.assertEqual(description.to_dict()["version"], "1.2.3")

    def test_unknown_digest_survives_decoding(self):
        description = protocol.decode_description(self.describe_response(digest="SHA1"))
        self.assertEqual(description.digest, "SHA1")

    def test_extra_fields_are_ignored(self):
        response = self.describe_response(firmware="2.1")
        self.assertEqual(protocol.decode_description(response).max_pcrs, 32)

    def test_wrong_field_type_is_invalid_response(self):
        for field, value in (("max_pcrs", "32"), ("module_id", 7), ("locked_pcrs", "0-15")):
            with self.assertRaises(DeviceError) as ctx:
                protocol.decode_description(self.describe_response(**{field: value}))
            self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)

    def test_missing_field_is_invalid_response(self):
        response = self.describe_response()
        del response["DescribeNSM"]["digest"]
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_description(response)
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)

    def test_response_for_another_operation_is_invalid(self):
        with self.assertRaises(DeviceError) as ctx:
            protocol.decode_get_random({"Attestation": {"document": b"doc"}})
        self.assertEqual(ctx.exception.code, ErrorCode.INVALID_RESPONSE)

    def test_decode_describe_pcr(self):
        body = protocol.decode_describe_pcr({"DescribePCR": {"lock": True, "data": b"\x00" * 48}})
        self.assertTrue(body.lock)
        self.assertEqual(body.data, bytes(48))

    def test_describe_pcr_lock_must_be_boolean(self):
        with self.assertRaises(DeviceError):
            protocol.decode_describe_pcr({"DescribePCR": {"lock": 1, "data": b""}})

    def test_decode_byte_payloads(self):
        self.assertEqual(protocol.decode_extend_pcr({"ExtendPCR": {"data": b"\x01"}}), b"\x01")
        self.assertEqual(protocol.decode_attestation({"Attestation": {"document": b"doc"}}), b"doc")
        self.assertEqual(protocol.decode_get_random({"GetRandom": {"random": b"\x07" * 4}}), b"\x07" * 4)

    def test_byte_payload_must_be_bytes(self):
        with self.assertRaises(DeviceError):
            protocol.decode_attestation({"Attestation": {"document": "doc"}})


if __name__ == "__main__":
    unittest.main()
