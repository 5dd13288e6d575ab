"""test_rule_index.py — Tests for type-rule / identifier index lookups.

Run: python3 -m pytest test_rule_index.py -v
"""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError

_HERE = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, _HERE)
sys.path.insert(0, os.path.join(_HERE, "..", "shared_layer", "python"))

import rule_index  # noqa: E402


class GetTypeRuleTests(unittest.TestCase):
    def setUp(self):
        rule_index.reset_caches()
        self.ddb = MagicMock()
        patcher = patch.object(rule_index, "_get_ddb", return_value=self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_found(self):
        self.ddb.get_item.return_value = {
            "Item": {
                "code": {"S": "1.2"},
                "display_name": {"S": "Grundbuch"},
                "requires_asset": {"BOOL": True},
            }
        }
        rule = rule_index.get_type_rule("1.2")
        self.assertEqual(rule.type, "1.2")
        self.assertTrue(rule.requires_asset)
        self.assertFalse(rule.require_strict)
        _args, kwargs = self.ddb.get_item.call_args
        self.assertEqual(kwargs["Key"], {"code": {"S": "1.2"}})

    def test_case_insensitive_fallback(self):
        self.ddb.get_item.side_effect = [{}, {"Item": {"code": {"S": "other-docs"}}}]
        rule = rule_index.get_type_rule("Other-Docs")
        self.assertEqual(rule.type, "other-docs")
        keys = [c.kwargs["Key"]["code"]["S"] for c in self.ddb.get_item.call_args_list]
        self.assertEqual(keys, ["Other-Docs", "other-docs"])

    def test_missing_is_cached(self):
        self.ddb.get_item.return_value = {}
        self.assertIsNone(rule_index.get_type_rule("9.9.9"))
        self.assertIsNone(rule_index.get_type_rule("9.9.9"))
        self.ddb.get_item.assert_called_once()

    def test_lookup_errors_propagate(self):
        self.ddb.get_item.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "gone"}}, "GetItem"
        )
        with self.assertRaises(ClientError):
            rule_index.get_type_rule("1.2")


class IdentifierExistsTests(unittest.TestCase):
    def setUp(self):
        rule_index.reset_caches()
        self.ddb = MagicMock()
        patcher = patch.object(rule_index, "_get_ddb", return_value=self.ddb)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_asset_queries_bridge_table(self):
        self.ddb.query.return_value = {"Items": [{"asset": {"S": "AB12"}}]}
        self.assertTrue(rule_index.identifier_exists("asset", "AB12"))
        _args, kwargs = self.ddb.query.call_args
        self.assertEqual(kwargs["TableName"], rule_index.ASSETS_TABLE)
        self.assertEqual(kwargs["ExpressionAttributeNames"], {"#k": "asset"})
        self.assertEqual(kwargs["Limit"], 1)

    def test_unknown_spv(self):
        self.ddb.query.return_value = {"Items": []}
        self.assertFalse(rule_index.identifier_exists("spv", "Nope"))
        self.assertFalse(rule_index.identifier_exists("spv", "Nope"))
        self.ddb.query.assert_called_once()

    def test_cache_is_case_sensitive(self):
        def query(**kwargs):
            value = kwargs["ExpressionAttributeValues"][":v"]["S"]
            return {"Items": [{"spv": {"S": value}}]} if value == "Alpha" else {"Items": []}

        self.ddb.query.side_effect = query
        self.assertTrue(rule_index.identifier_exists("spv", "Alpha"))
        self.assertFalse(rule_index.identifier_exists("spv", "alpha"))
        self.assertEqual(self.ddb.query.call_count, 2)

    def test_fail_open_on_error(self):
        self.ddb.query.side_effect = ClientError(
            {"Error": {"Code": "Throttling", "Message": "slow"}}, "Query"
        )
        self.assertTrue(rule_index.identifier_exists("fund", "F1"))


if __name__ == "__main__":
    unittest.main()
