"""test_layer.py — Unit tests for docintake_shared layer modules.

Run from shared_layer directory:
    PYTHONPATH=python python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

from docintake_shared import tag_codec
import docintake_shared.auth as auth_mod
from docintake_shared.auth import _authenticate, _extract_token
from docintake_shared.aws_clients import _get_ddb, _get_s3
from docintake_shared.errors import (
    ComposeFailure,
    DelegateFailure,
    IntakeError,
    MissingField,
    UnknownType,
)
from docintake_shared.http_utils import (
    _error,
    _intake_error,
    _parse_body,
    _path_method,
    _preflight,
    _response,
)
from docintake_shared.sanitize import (
    digits_only,
    normalize_asset,
    sanitize_filename,
    sanitize_segment,
    sanitize_tag_value,
    uniq_case_insensitive,
)
from docintake_shared.serialization import (
    _deserialize,
    _emit_structured_observability,
    _now_z,
    _serialize,
    _serialize_item,
)


class TagCodecTests(unittest.TestCase):
    def test_encode_preserves_order(self):
        token = tag_codec.encode({"ttype": "1.2", "tdate": "2024-03"})
        self.assertEqual(token, "m(ttype=1.2)(tdate=2024-03)")

    def test_encode_empty_mapping(self):
        self.assertEqual(tag_codec.encode({}), "m")
        self.assertEqual(tag_codec.decode("m"), {})

    def test_encode_escapes_delimiters(self):
        token = tag_codec.encode({"tname": "Miete (Q1)=ok!*'"})
        inner = token[len("m(tname="):-1]
        for ch in "()=!*' ":
            self.assertNotIn(ch, inner)

    def test_round_trip_awkward_values(self):
        tags = {
            "ttype": "1.7.3.12",
            "tname": "Nebenkosten (2023) = final!",
            "tasset": "ÄBC-12",
            "tmail": "jane.doe+intake@example.com",
            "tdate": "",
        }
        self.assertEqual(tag_codec.decode(tag_codec.encode(tags)), tags)

    def test_lone_surrogate_round_trips(self):
        tags = {"tasset": "A\ud800", "tname": "x\udfff\ud83d"}
        token = tag_codec.encode(tags)
        self.assertEqual(token, "m(tasset=A%ED%A0%80)(tname=x%ED%BF%BF%ED%A0%BD)")
        self.assertEqual(tag_codec.decode(token), tags)

    def test_decode_invalid_utf8_keeps_raw_value(self):
        self.assertEqual(tag_codec.decode("m(a=%FF)"), {"a": "%FF"})

    def test_encode_normalizes_and_skips_keys(self):
        token = tag_codec.encode({" TType ": "1", "***": "dropped", None: "x"})
        self.assertEqual(token, "m(ttype=1)")

    def test_encode_none_value_is_empty(self):
        self.assertEqual(tag_codec.encode({"tdate": None}), "m(tdate=)")

    def test_decode_malformed_returns_none(self):
        for token in ("", "x(a=b)", "m(badkey", "m(=x)", "m(novalue)", "m(a b=c)", "m(a=b)junk", "ma=b"):
            with self.subTest(token=token):
                self.assertIsNone(tag_codec.decode(token))

    def test_decode_simple(self):
        self.assertEqual(tag_codec.decode("m(tdate=2024)"), {"tdate": "2024"})

    def test_decode_lowercases_keys(self):
        self.assertEqual(tag_codec.decode("m(TTYPE=1.2)"), {"ttype": "1.2"})

    def test_decode_bad_escape_keeps_raw_value(self):
        self.assertEqual(tag_codec.decode("m(a=100%zz)"), {"a": "100%zz"})

    def test_decode_filename_ignores_extension(self):
        name = "m(ttype=1.2)(tdate=2024-03).pdf"
        self.assertEqual(tag_codec.decode_filename(name), {"ttype": "1.2", "tdate": "2024-03"})

    def test_decode_filename_without_extension(self):
        self.assertEqual(tag_codec.decode_filename("m(ttype=1.2)"), {"ttype": "1.2"})

    def test_decode_filename_plain_name(self):
        self.assertIsNone(tag_codec.decode_filename("Scan 01.pdf"))

    def test_build_filename_keeps_extension(self):
        self.assertEqual(tag_codec.build_filename({"ttype": "1.2"}, "Scan 01.PDF"), "m(ttype=1.2).PDF")
        self.assertEqual(tag_codec.build_filename({"ttype": "1.2"}, "README"), "m(ttype=1.2)")


class SanitizeTests(unittest.TestCase):
    def test_sanitize_filename_transliterates(self):
        self.assertEqual(
            sanitize_filename("Mietvertrag für Müller.pdf"),
            "Mietvertrag fuer Mueller.pdf",
        )

    def test_sanitize_filename_idempotent(self):
        once = sanitize_filename('Straße: "Größe" / Café?  .docx')
        self.assertEqual(sanitize_filename(once), once)

    def test_sanitize_filename_unsafe_chars(self):
        self.assertEqual(sanitize_filename("a/b:c*d"), "a-b-c-d")

    def test_sanitize_filename_empty_falls_back(self):
        self.assertEqual(sanitize_filename("   "), "unnamed")
        self.assertEqual(sanitize_filename(""), "unnamed")

    def test_sanitize_tag_value_neutralizes_delimiters(self):
        self.assertEqual(sanitize_tag_value("Fund (A)=1"), "Fund -A-1")
        self.assertEqual(sanitize_tag_value("  "), "")

    def test_sanitize_segment(self):
        self.assertIsNone(sanitize_segment(""))
        self.assertEqual(sanitize_segment("Ober  geschoss"), "Ober geschoss")
        self.assertEqual(sanitize_segment("Ober  geschoss", keep_spaces=False), "Obergeschoss")

    def test_normalize_asset(self):
        self.assertEqual(normalize_asset(" ab 12 "), "AB12")
        self.assertIsNone(normalize_asset("   "))

    def test_digits_only(self):
        self.assertEqual(digits_only("T-0042"), "0042")
        self.assertEqual(digits_only(None), "")

    def test_uniq_case_insensitive(self):
        self.assertEqual(uniq_case_insensitive(["b", "A", "a", "B ", "Ä", None]), ["A", "Ä", "b"])


class ErrorTests(unittest.TestCase):
    def test_taxonomy(self):
        self.assertTrue(issubclass(MissingField, IntakeError))
        self.assertTrue(issubclass(IntakeError, ValueError))
        self.assertEqual(UnknownType.status_code, 404)
        self.assertEqual(ComposeFailure.status_code, 500)
        self.assertTrue(DelegateFailure.retryable)

    def test_to_details_includes_field(self):
        exc = UnknownType("Unknown document type '9.9.9'.", field="type", type="9.9.9")
        self.assertEqual(exc.to_details(), {"type": "9.9.9", "field": "type"})

    def test_intake_error_envelope(self):
        resp = _intake_error(MissingField("Field 'tenant' is required.", field="tenant"))
        self.assertEqual(resp["statusCode"], 400)
        body = json.loads(resp["body"])
        self.assertEqual(body["error_envelope"]["code"], "MISSING_FIELD")
        self.assertFalse(body["error_envelope"]["retryable"])
        self.assertEqual(body["field"], "tenant")


class AuthTests(unittest.TestCase):
    def setUp(self):
        patcher = patch.object(auth_mod, "INTERNAL_API_KEYS", ("test-key-123", "old-key"))
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_extract_token_from_cookie_header(self):
        event = {"headers": {"cookie": "docintake_id_token=abc123; other=val"}}
        self.assertEqual(_extract_token(event), "abc123")

    def test_extract_token_from_cookies_array(self):
        event = {"headers": {}, "cookies": ["docintake_id_token=xyz789", "other=val"]}
        self.assertEqual(_extract_token(event), "xyz789")

    def test_extract_token_missing(self):
        self.assertIsNone(_extract_token({"headers": {"cookie": "other=val"}}))
        self.assertIsNone(_extract_token({"headers": {"cookie": "docintake_id_token="}}))

    def test_internal_key_caller(self):
        event = {"headers": {"x-docintake-internal-key": "test-key-123"}}
        caller, err = _authenticate(event, error_fn=_error)
        self.assertIsNone(err)
        self.assertTrue(caller.internal)
        self.assertEqual(caller.uploader_for({"uploader": " ops@example.com "}), "ops@example.com")
        self.assertEqual(caller.uploader_for({}), "")

    def test_rollover_key_accepted(self):
        caller, err = _authenticate({"headers": {"X-Docintake-Internal-Key": "old-key"}}, error_fn=_error)
        self.assertIsNone(err)
        self.assertTrue(caller.internal)

    def test_wrong_internal_key_falls_through_to_cookie(self):
        event = {"headers": {"x-docintake-internal-key": "nope"}}
        caller, err = _authenticate(event, error_fn=_error)
        self.assertIsNone(caller)
        self.assertEqual(err["statusCode"], 401)

    def test_cookie_caller_uses_email_then_sub(self):
        event = {"headers": {"cookie": "docintake_id_token=t"}}
        with patch.object(auth_mod, "_decode_id_token", return_value={"sub": "u1", "email": "a@b.de"}):
            caller, _ = _authenticate(event, error_fn=_error)
        self.assertFalse(caller.internal)
        self.assertEqual(caller.identity, "a@b.de")
        # A browser caller can not upload on someone else's behalf.
        self.assertEqual(caller.uploader_for({"uploader": "x@y.de"}), "a@b.de")
        with patch.object(auth_mod, "_decode_id_token", return_value={"sub": "u1"}):
            caller, _ = _authenticate(event, error_fn=_error)
        self.assertEqual(caller.identity, "u1")

    def test_invalid_token_uses_error_fn(self):
        with patch.object(auth_mod, "_decode_id_token", side_effect=ValueError("Token has expired.")):
            caller, err = _authenticate({"headers": {"cookie": "docintake_id_token=t"}}, error_fn=_error)
        self.assertIsNone(caller)
        body = json.loads(err["body"])
        self.assertEqual(body["error"], "Token has expired.")
        self.assertEqual(body["error_envelope"]["code"], "PERMISSION_DENIED")

    def test_decode_rejects_access_tokens(self):
        client = MagicMock()
        with patch.object(auth_mod, "COGNITO_USER_POOL_ID", "eu-west-1_Pool"), \
                patch.object(auth_mod, "_jwk_client", return_value=client), \
                patch.object(auth_mod.jwt, "decode", return_value={"sub": "u1", "token_use": "access"}) as decode:
            with self.assertRaises(ValueError):
                auth_mod._decode_id_token("t")
        self.assertEqual(
            decode.call_args.kwargs["issuer"],
            "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_Pool",
        )

    def test_decode_maps_jwt_errors(self):
        client = MagicMock()
        client.get_signing_key_from_jwt.side_effect = auth_mod.jwt.PyJWKClientError("no key")
        with patch.object(auth_mod, "_jwk_client", return_value=client):
            with self.assertRaisesRegex(ValueError, "Token validation failed"):
                auth_mod._decode_id_token("t")

    def test_jwk_client_requires_pool(self):
        with patch.object(auth_mod, "COGNITO_USER_POOL_ID", ""):
            with self.assertRaises(ValueError):
                auth_mod._jwk_client()


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, {"key": "val"})
        self.assertEqual(resp["statusCode"], 200)
        self.assertIn("Access-Control-Allow-Origin", resp["headers"])
        self.assertEqual(json.loads(resp["body"]), {"key": "val"})

    def test_error_defaults(self):
        body = json.loads(_error(404, "missing")["body"])
        self.assertEqual(body["error_envelope"]["code"], "NOT_FOUND")
        self.assertFalse(body["error_envelope"]["retryable"])
        body = json.loads(_error(500, "boom")["body"])
        self.assertEqual(body["error_envelope"]["code"], "INTERNAL_ERROR")
        self.assertTrue(body["error_envelope"]["retryable"])

    def test_preflight(self):
        resp = _preflight()
        self.assertEqual(resp["statusCode"], 204)
        self.assertEqual(resp["body"], "")

    def test_parse_body(self):
        self.assertEqual(_parse_body({"body": '{"key": "val"}'}), {"key": "val"})
        self.assertIsNone(_parse_body({"body": "{not json"}))

    def test_parse_body_base64(self):
        import base64

        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_parse_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_path_method(self):
        event = {"requestContext": {"http": {"method": "post", "path": "/api/v1/uploads/sign"}}}
        self.assertEqual(_path_method(event), ("POST", "/api/v1/uploads/sign"))


class SerializationTests(unittest.TestCase):
    def test_serialize_item_drops_none(self):
        self.assertEqual(_serialize_item({"a": "x", "b": None}), {"a": {"S": "x"}})

    def test_serialize_float(self):
        self.assertEqual(_serialize(3.14)["N"], "3.14")

    def test_deserialize_item(self):
        result = _deserialize({"name": {"S": "test"}, "count": {"N": "42"}, "ratio": {"N": "0.5"}})
        self.assertEqual(result, {"name": "test", "count": 42, "ratio": 0.5})

    def test_now_z_format(self):
        self.assertRegex(_now_z(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")

    def test_observability_line(self):
        with self.assertLogs("docintake_shared.serialization", level="INFO") as logs:
            _emit_structured_observability(
                component="upload_api",
                event="upload_signed",
                latency_ms=12,
                extra={"bucket": "inbox"},
            )
        line = logs.output[0]
        self.assertIn("[OBSERVABILITY]", line)
        payload = json.loads(line.split("[OBSERVABILITY] ", 1)[1])
        self.assertEqual(payload["event"], "upload_signed")
        self.assertEqual(payload["bucket"], "inbox")
        self.assertEqual(payload["error_code"], "")


class AwsClientTests(unittest.TestCase):
    @patch("docintake_shared.aws_clients.boto3")
    def test_get_ddb_singleton(self, mock_boto3):
        import docintake_shared.aws_clients as clients

        clients._ddb = None
        mock_boto3.client.return_value = MagicMock()
        self.assertIs(_get_ddb(), _get_ddb())
        mock_boto3.client.assert_called_once()
        clients._ddb = None

    @patch("docintake_shared.aws_clients.boto3")
    def test_get_s3_uses_sigv4(self, mock_boto3):
        import docintake_shared.aws_clients as clients

        clients._s3 = None
        _get_s3()
        args, kwargs = mock_boto3.client.call_args
        self.assertEqual(args[0], "s3")
        self.assertEqual(kwargs["config"].signature_version, "s3v4")
        clients._s3 = None


if __name__ == "__main__":
    unittest.main()
