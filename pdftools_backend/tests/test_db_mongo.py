import os
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from pdftools_backend.config import Settings
from pdftools_backend.db import MongoDbClient, open_db_client
from pdftools_backend.errors import DuplicateUserError, StoreError


class MongoDbClientTests(unittest.TestCase):
    """Exercises the pymongo calls against mocked collections."""

    def setUp(self):
        patcher = patch("pdftools_backend.db.MongoClient")
        self.mongo_client_cls = patcher.start()
        self.addCleanup(patcher.stop)
        self.db = MongoDbClient(
            "mongodb://localhost:27017",
            "pdftools_test",
            connect_timeout_ms=1000,
            socket_timeout_ms=2000,
        )
        self.db.users = MagicMock()
        self.db.visits = MagicMock()
        self.db.tool_usage = MagicMock()

    def test_client_uses_bounded_timeouts(self):
        _, kwargs = self.mongo_client_cls.call_args
        self.assertEqual(kwargs["serverSelectionTimeoutMS"], 1000)
        self.assertEqual(kwargs["connectTimeoutMS"], 1000)
        self.assertEqual(kwargs["socketTimeoutMS"], 2000)

    def test_increment_is_single_atomic_upsert(self):
        self.db.tool_usage.find_one_and_update.return_value = {
            "tool_name": "merge",
            "count": 4,
            "last_user_id": "u1",
        }
        record = self.db.increment_tool_usage("merge", user_id="u1")

        self.assertEqual(record.count, 4)
        self.assertEqual(record.last_user_id, "u1")
        self.db.tool_usage.find_one_and_update.assert_called_once()
        args, kwargs = self.db.tool_usage.find_one_and_update.call_args
        self.assertEqual(args[0], {"tool_name": "merge"})
        self.assertEqual(args[1]["$inc"], {"count": 1})
        self.assertEqual(args[1]["$set"]["last_user_id"], "u1")
        self.assertTrue(kwargs["upsert"])
        self.assertEqual(kwargs["return_document"], ReturnDocument.AFTER)
        self.db.tool_usage.find_one.assert_not_called()
        self.db.tool_usage.create_index.assert_called_once_with("tool_name", unique=True)

    def test_increment_retries_after_upsert_race(self):
        self.db.tool_usage.find_one_and_update.side_effect = [
            DuplicateKeyError("E11000 duplicate key"),
            {"tool_name": "merge", "count": 2},
        ]
        record = self.db.increment_tool_usage("merge")
        self.assertEqual(record.count, 2)
        self.assertEqual(self.db.tool_usage.find_one_and_update.call_count, 2)
        _, retry_kwargs = self.db.tool_usage.find_one_and_update.call_args
        self.assertNotIn("upsert", retry_kwargs)

    def test_create_user(self):
        oid = ObjectId()
        self.db.users.find_one.return_value = None
        self.db.users.insert_one.return_value = MagicMock(inserted_id=oid)
        user = self.db.create_user("Ada", "ada@example.com", "hash")
        self.assertEqual(user.user_id, str(oid))
        inserted = self.db.users.insert_one.call_args[0][0]
        self.assertEqual(inserted["password_hash"], "hash")
        self.assertNotIn("password", inserted)

    def test_create_user_duplicate_from_lookup(self):
        self.db.users.find_one.return_value = {"_id": ObjectId(), "email": "ada@example.com"}
        with self.assertRaises(DuplicateUserError):
            self.db.create_user("Ada", "ada@example.com", "hash")
        self.db.users.insert_one.assert_not_called()

    def test_create_user_duplicate_from_unique_index(self):
        self.db.users.find_one.return_value = None
        self.db.users.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        with self.assertRaises(DuplicateUserError):
            self.db.create_user("Ada", "ada@example.com", "hash")

    def test_driver_errors_become_store_errors(self):
        self.db.users.find_one.side_effect = ServerSelectionTimeoutError("no servers")
        with self.assertRaises(StoreError):
            self.db.find_user_by_email("ada@example.com")

    def test_get_user_with_invalid_id(self):
        self.assertIsNone(self.db.get_user("not-an-object-id"))
        self.db.users.find_one.assert_not_called()

    def test_list_tool_usage_sorts_in_store(self):
        cursor = self.db.tool_usage.find.return_value
        cursor.sort.return_value = [
            {"tool_name": "split", "count": 5},
            {"tool_name": "merge", "count": 3},
        ]
        stats = self.db.list_tool_usage()
        cursor.sort.assert_called_once_with("count", DESCENDING)
        self.assertEqual([(r.tool_name, r.count) for r in stats], [("split", 5), ("merge", 3)])

    def test_record_visit(self):
        oid = ObjectId()
        self.db.visits.insert_one.return_value = MagicMock(inserted_id=oid)
        visit = self.db.record_visit("/merge", user_agent="ua", ip="1.2.3.4")
        self.assertEqual(visit.visit_id, str(oid))
        doc = self.db.visits.insert_one.call_args[0][0]
        self.assertEqual(doc["page"], "/merge")
        self.assertEqual(doc["ip"], "1.2.3.4")

    def test_ping_failure(self):
        self.db.client.admin.command.side_effect = ServerSelectionTimeoutError("down")
        self.assertFalse(self.db.ping())

    def test_ping_is_bounded_by_health_timeout(self):
        self.db.probe_timeout_ms = 1500
        with patch("pdftools_backend.db.mongo_timeout") as mongo_timeout:
            self.assertTrue(self.db.ping())
        mongo_timeout.assert_called_once_with(1.5)
        mongo_timeout.return_value.__enter__.assert_called_once()
        self.db.client.admin.command.assert_called_once_with("ping")

    def test_accounts_live_in_shared_users_collection(self):
        database = self.mongo_client_cls.return_value.__getitem__.return_value
        names = [c.args[0] for c in database.__getitem__.call_args_list]
        self.assertEqual(names, ["users", "visits", "toolusage"])

    def test_reads_users_written_by_earlier_deployment(self):
        oid = ObjectId()
        self.db.users.find_one.return_value = {
            "_id": oid,
            "name": "Ada",
            "email": "ada@example.com",
            "password": "$2a$10$legacyhash",
            "createdAt": datetime(2024, 5, 1),
        }
        user = self.db.find_user_by_email("ada@example.com")
        self.assertEqual(user.user_id, str(oid))
        self.assertEqual(user.password_hash, "$2a$10$legacyhash")
        self.assertEqual(
            user.created_at, datetime(2024, 5, 1, tzinfo=timezone.utc).timestamp()
        )


class OpenDbClientTests(unittest.TestCase):
    @patch("pdftools_backend.db.MongoClient")
    def test_unreachable_mongo_is_not_fatal(self, mongo_client_cls):
        mongo_client_cls.return_value.admin.command.side_effect = (
            ServerSelectionTimeoutError("down")
        )
        settings = Settings(
            database_url="mongodb://db.invalid:27017",
            use_in_memory_backends=False,
            jwt_secret="x" * 32,
        )
        client = open_db_client(settings)
        self.assertIsInstance(client, MongoDbClient)
        self.assertFalse(client.ping())

    @patch("pdftools_backend.db.MongoClient")
    def test_health_timeout_comes_from_settings(self, mongo_client_cls):
        settings = Settings(
            database_url="mongodb://localhost:27017",
            db_probe_timeout_ms=750,
            use_in_memory_backends=False,
            jwt_secret="x" * 32,
        )
        with patch("pdftools_backend.db.mongo_timeout") as mongo_timeout:
            client = open_db_client(settings)
        self.assertEqual(client.probe_timeout_ms, 750)
        mongo_timeout.assert_called_once_with(0.75)

    def test_mongo_uri_is_accepted_for_database_url(self):
        env = {"MONGO_URI": "mongodb://legacy.example:27017/pdftools"}
        with patch.dict(os.environ, env):
            os.environ.pop("DATABASE_URL", None)
            settings = Settings(_env_file=None)
        self.assertEqual(settings.database_url, env["MONGO_URI"])


if __name__ == "__main__":
    unittest.main()
