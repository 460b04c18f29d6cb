import asyncio
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests
from botocore.exceptions import ClientError
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import SERVER_TIMESTAMP

from backend.errors import GatewayError, translate_error
from backend.gateway import FirestoreGateway, InMemoryGateway
from backend.storage import InMemoryStorageClient


class InMemoryGatewayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.now = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
        self.gateway = InMemoryGateway(clock=lambda: self.now)

    async def test_merge_write_keeps_other_fields(self):
        await self.gateway.write("c/1", {"a": 1, "b": 2})
        await self.gateway.write("c/1", {"b": 3})
        self.assertEqual(await self.gateway.read("c/1"), {"a": 1, "b": 3})

    async def test_overwrite_without_merge(self):
        await self.gateway.write("c/1", {"a": 1, "b": 2})
        await self.gateway.write("c/1", {"b": 3}, merge=False)
        self.assertEqual(await self.gateway.read("c/1"), {"b": 3})

    async def test_server_timestamp_is_resolved(self):
        await self.gateway.write("c/1", {"at": SERVER_TIMESTAMP})
        self.assertEqual(self.gateway.documents["c/1"]["at"], self.now)

    async def test_read_missing_returns_none(self):
        self.assertIsNone(await self.gateway.read("c/none"))

    async def test_injected_failure(self):
        self.gateway.fail_next("delete", transient=True)
        with self.assertRaises(GatewayError) as ctx:
            await self.gateway.delete("c/1")
        self.assertTrue(ctx.exception.transient)
        await self.gateway.delete("c/1")

    async def test_collection_subscription_orders_and_filters(self):
        snapshots = []
        self.gateway.subscribe_collection(
            "c", snapshots.append, order_by="n", descending=True
        )
        await self.gateway.write("c/a", {"n": 1})
        await self.gateway.write("c/b", {"n": 2})
        await self.gateway.write("c/no-field", {"x": 0})
        await self.gateway.write("c/a/sub/z", {"n": 9})

        self.assertEqual(len(snapshots), 4)
        self.assertEqual([doc.id for doc in snapshots[-1]], ["b", "a"])

    async def test_cancel_stops_deliveries(self):
        received = []
        subscription = self.gateway.subscribe_document("c/1", received.append)
        self.assertEqual(received, [None])
        await self.gateway.write("c/1", {"a": 1})
        subscription.cancel()
        await self.gateway.write("c/1", {"a": 2})
        self.assertEqual(received, [None, {"a": 1}])
        self.assertEqual(self.gateway.active_subscriptions(), 0)

    async def test_listener_errors_are_swallowed(self):
        def broken(_):
            raise RuntimeError("boom")

        self.gateway.subscribe_document("c/1", broken)
        await self.gateway.write("c/1", {"a": 1})
        self.assertEqual(self.gateway.documents["c/1"], {"a": 1})

    async def test_upload_and_download(self):
        url = await self.gateway.upload(b"data", "p/a.jpg")
        self.assertEqual(await self.gateway.download(url), b"data")
        with self.assertRaises(GatewayError):
            await self.gateway.download(self.gateway.storage.url_for("p/missing.jpg"))


class FirestoreGatewayTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = MagicMock()
        self.storage = InMemoryStorageClient()
        self.gateway = FirestoreGateway(self.db, self.storage)

    async def test_read_missing_document(self):
        snapshot = MagicMock(exists=False)
        self.db.document.return_value.get.return_value = snapshot
        self.assertIsNone(await self.gateway.read("c/1"))
        self.db.document.assert_called_with("c/1")

    async def test_write_uses_merge(self):
        await self.gateway.write("c/1", {"a": 1})
        self.db.document.return_value.set.assert_called_once_with({"a": 1}, merge=True)

    async def test_sdk_errors_are_translated(self):
        self.db.document.return_value.delete.side_effect = (
            google_exceptions.ServiceUnavailable("down")
        )
        with self.assertRaises(GatewayError) as ctx:
            await self.gateway.delete("c/1")
        self.assertTrue(ctx.exception.transient)

    async def test_new_document_id_is_local(self):
        self.db.collection.return_value.document.return_value.id = "generated"
        self.assertEqual(self.gateway.new_document_id("c"), "generated")

    async def test_collection_snapshot_is_delivered_on_loop(self):
        received = []
        self.gateway.subscribe_collection(
            "c", received.append, order_by="date", descending=True
        )
        query = self.db.collection.return_value.order_by.return_value
        self.db.collection.return_value.order_by.assert_called_once_with(
            "date", direction="DESCENDING"
        )
        on_snapshot = query.on_snapshot.call_args.args[0]

        doc = MagicMock(id="a")
        doc.to_dict.return_value = {"title": "t"}
        on_snapshot([doc], [], None)
        self.assertEqual(received, [])
        await asyncio.sleep(0)
        self.assertEqual(len(received), 1)
        self.assertEqual(received[0][0].id, "a")
        self.assertEqual(received[0][0].data, {"title": "t"})

    async def test_cancelled_document_listener_drops_late_snapshots(self):
        received = []
        subscription = self.gateway.subscribe_document("c/1", received.append)
        watch = self.db.document.return_value.on_snapshot.return_value
        on_snapshot = self.db.document.return_value.on_snapshot.call_args.args[0]

        snapshot = MagicMock(exists=True)
        snapshot.to_dict.return_value = {"a": 1}
        on_snapshot([snapshot], [], None)
        subscription.cancel()
        await asyncio.sleep(0)

        self.assertEqual(received, [])
        watch.unsubscribe.assert_called_once()

    async def test_upload_delegates_to_storage(self):
        url = await self.gateway.upload(b"img", "p/a.jpg")
        self.assertEqual(url, self.storage.url_for("p/a.jpg"))


class TranslateErrorTests(unittest.TestCase):
    def test_google_errors(self):
        self.assertTrue(translate_error(google_exceptions.DeadlineExceeded("x")).transient)
        self.assertFalse(translate_error(google_exceptions.PermissionDenied("x")).transient)
        self.assertFalse(translate_error(google_exceptions.NotFound("x")).transient)

    def test_requests_errors(self):
        self.assertTrue(translate_error(requests.ConnectionError("x")).transient)
        response = requests.Response()
        response.status_code = 404
        self.assertFalse(
            translate_error(requests.HTTPError("x", response=response)).transient
        )
        response.status_code = 503
        self.assertTrue(
            translate_error(requests.HTTPError("x", response=response)).transient
        )

    def test_botocore_errors(self):
        throttled = ClientError(
            {"Error": {"Code": "SlowDown"}, "ResponseMetadata": {"HTTPStatusCode": 503}},
            "PutObject",
        )
        denied = ClientError(
            {"Error": {"Code": "AccessDenied"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
            "PutObject",
        )
        self.assertTrue(translate_error(throttled).transient)
        self.assertFalse(translate_error(denied).transient)

    def test_gateway_error_passes_through(self):
        error = GatewayError("x", transient=True)
        self.assertIs(translate_error(error), error)

    def test_unknown_errors_are_permanent(self):
        self.assertFalse(translate_error(ValueError("bad")).transient)


if __name__ == "__main__":
    unittest.main()
