import os
import sys
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.utils import lookup_token
from db.tokens import TokenManager
from inference.policy import Authenticated


class TokenManagerTest(unittest.TestCase):

    def setUp(self):
        print(f"\n🧪 Running {self._testMethodName}...")
        self.collection = MagicMock()
        self.manager = TokenManager(collection=self.collection)

    def test_create_stores_role_and_expiry(self):
        token = self.manager.create(owner="amina", role="researcher", expires_in_days=10)
        doc = self.collection.insert_one.call_args.args[0]
        self.assertEqual(doc["token"], token)
        self.assertEqual(doc["owner"], "amina")
        self.assertEqual(doc["role"], "researcher")
        self.assertTrue(doc["active"])
        self.assertEqual(doc["expires_at"] - doc["created_at"], timedelta(days=10))

    def test_create_rejects_unknown_role(self):
        with self.assertRaises(ValueError):
            self.manager.create(owner="amina", role="superuser")
        self.collection.insert_one.assert_not_called()

    def test_deactivate(self):
        self.collection.update_one.return_value = MagicMock(modified_count=1)
        self.assertEqual(self.manager.deactivate("abc"), 1)
        self.collection.update_one.assert_called_once_with({"token": "abc"}, {"$set": {"active": False}})


class LookupTokenTest(unittest.TestCase):

    def setUp(self):
        print(f"\n🧪 Running {self._testMethodName}...")
        self.collection = MagicMock()
        patcher = patch("app.utils.get_mongo_collection", return_value=self.collection)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_active_token(self):
        self.collection.find_one.return_value = {
            "token": "t", "owner": "amina", "role": "admin", "active": True,
            "expires_at": datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)}  # naive, as pymongo returns it
        self.assertEqual(lookup_token("t"), Authenticated(id="amina", role="admin"))
        self.collection.find_one.assert_called_once_with({"token": "t", "active": True})

    def test_expired_token(self):
        self.collection.find_one.return_value = {
            "token": "t", "owner": "amina", "active": True,
            "expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}
        self.assertIsNone(lookup_token("t"))

    def test_unknown_token(self):
        self.collection.find_one.return_value = None
        self.assertIsNone(lookup_token("t"))


if __name__ == "__main__":
    unittest.main()
