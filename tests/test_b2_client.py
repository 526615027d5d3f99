import io
import sys
import unittest
from pathlib import Path
from unittest import mock

import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from bookvault.b2 import B2Authorization, B2Client  # noqa: E402
from bookvault.errors import AuthError, ObjectStoreError  # noqa: E402

AUTH_PAYLOAD = {
    "authorizationToken": "account-token",
    "apiUrl": "https://api001.example.test/",
    "downloadUrl": "https://f001.example.test",
}
AUTH = B2Authorization("account-token", "https://api001.example.test", "https://f001.example.test")


def _response(status=200, payload=None, headers=None):
    response = mock.Mock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.json.return_value = payload or {}
    response.headers = headers or {}
    return response


class B2ClientTests(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock()
        self.client = B2Client(
            "key-id",
            "app-key",
            "bucket-id",
            "bucket name",
            api_url="https://auth.example.test",
            timeout=5,
            session=self.session,
        )

    def test_authorize_parses_urls(self):
        self.session.get.return_value = _response(payload=AUTH_PAYLOAD)

        auth = self.client.authorize()

        self.assertEqual(auth, AUTH)
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://auth.example.test/b2api/v2/b2_authorize_account")
        self.assertEqual(kwargs["auth"], ("key-id", "app-key"))

    def test_authorize_rejected(self):
        self.session.get.return_value = _response(status=401)
        with self.assertRaises(AuthError):
            self.client.authorize()

    def test_authorize_without_credentials(self):
        client = B2Client("", "", "", "", session=self.session)
        with self.assertRaises(AuthError):
            client.authorize()
        self.session.get.assert_not_called()

    def test_authorize_network_failure(self):
        self.session.get.side_effect = requests.ConnectionError("down")
        with self.assertRaises(ObjectStoreError):
            self.client.authorize()

    def test_get_upload_ticket_authorizes_each_time(self):
        self.session.get.return_value = _response(payload=AUTH_PAYLOAD)
        self.session.post.return_value = _response(
            payload={"uploadUrl": "https://pod.example.test/upload", "authorizationToken": "upload-token"}
        )

        first = self.client.get_upload_ticket()
        self.client.get_upload_ticket()

        self.assertEqual(first.upload_url, "https://pod.example.test/upload")
        self.assertEqual(first.authorization_token, "upload-token")
        self.assertEqual(self.session.get.call_count, 2)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://api001.example.test/b2api/v2/b2_get_upload_url")
        self.assertEqual(kwargs["json"], {"bucketId": "bucket-id"})
        self.assertEqual(kwargs["headers"], {"Authorization": "account-token"})

    def test_upload_object_posts_to_issued_url(self):
        self.session.post.return_value = _response(
            payload={"fileId": "4_z123", "fileName": "abc def.pdf", "contentLength": 5}
        )
        stream = io.BytesIO(b"hello")

        stored = self.client.upload_object(
            "https://pod.example.test/upload",
            "upload-token",
            "abc def.pdf",
            stream,
            content_type="application/pdf",
            content_sha1="aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d",
        )

        self.assertEqual(stored.file_id, "4_z123")
        self.assertEqual(stored.size, 5)
        args, kwargs = self.session.post.call_args
        self.assertEqual(args[0], "https://pod.example.test/upload")
        self.assertIs(kwargs["data"], stream)
        self.assertEqual(
            kwargs["headers"],
            {
                "Authorization": "upload-token",
                "X-Bz-File-Name": "abc%20def.pdf",
                "Content-Type": "application/pdf",
                "X-Bz-Content-Sha1": "aaf4c61ddcc5e8a2dabede0f3b482cd9aea9434d",
            },
        )
        self.session.get.assert_not_called()

    def test_upload_object_failures(self):
        self.session.post.return_value = _response(status=503)
        with self.assertRaises(ObjectStoreError):
            self.client.upload_object("https://pod.example.test/upload", "t", "a.pdf", io.BytesIO(b"x"))

        self.session.post.side_effect = requests.Timeout("slow")
        with self.assertRaises(ObjectStoreError):
            self.client.upload_object("https://pod.example.test/upload", "t", "a.pdf", io.BytesIO(b"x"))

    def test_find_by_exact_name_rejects_neighbouring_name(self):
        self.session.post.return_value = _response(
            payload={"files": [{"fileName": "abc.pdf.bak", "fileId": "f1", "contentLength": 3}]}
        )
        self.assertIsNone(self.client.find_by_exact_name("abc.pdf", auth=AUTH))

        _, kwargs = self.session.post.call_args
        self.assertEqual(
            kwargs["json"],
            {"bucketId": "bucket-id", "startFileName": "abc.pdf", "maxFileCount": 1},
        )

    def test_find_by_exact_name_hit(self):
        self.session.post.return_value = _response(
            payload={"files": [{"fileName": "abc.pdf", "fileId": "f1", "contentLength": 900}]}
        )
        stored = self.client.find_by_exact_name("abc.pdf", auth=AUTH)
        self.assertEqual((stored.file_id, stored.name, stored.size), ("f1", "abc.pdf", 900))

    def test_find_by_exact_name_empty_listing_and_errors(self):
        self.session.post.return_value = _response(payload={"files": []})
        self.assertIsNone(self.client.find_by_exact_name("abc.pdf", auth=AUTH))

        self.session.post.return_value = _response(status=503)
        with self.assertRaises(ObjectStoreError):
            self.client.find_by_exact_name("abc.pdf", auth=AUTH)

        self.session.post.return_value = _response(status=401)
        with self.assertRaises(AuthError):
            self.client.find_by_exact_name("abc.pdf", auth=AUTH)

    def test_delete_object_swallows_failures(self):
        self.session.post.return_value = _response(status=500)
        self.assertFalse(self.client.delete_object("f1", "abc.pdf", auth=AUTH))

        self.session.post.side_effect = requests.Timeout("slow")
        self.assertFalse(self.client.delete_object("f1", "abc.pdf", auth=AUTH))

    def test_delete_object_success(self):
        self.session.post.return_value = _response(payload={"fileId": "f1"})
        self.assertTrue(self.client.delete_object("f1", "abc.pdf", auth=AUTH))
        _, kwargs = self.session.post.call_args
        self.assertEqual(kwargs["json"], {"fileId": "f1", "fileName": "abc.pdf"})

    def test_delete_by_name_when_absent(self):
        self.session.post.return_value = _response(payload={"files": []})
        self.assertFalse(self.client.delete_by_name("abc.pdf", auth=AUTH))
        self.assertEqual(self.session.post.call_count, 1)

    def test_download_authorization(self):
        self.session.post.return_value = _response(payload={"authorizationToken": "dl-token"})
        token = self.client.get_download_authorization("abc.pdf", 600, auth=AUTH)
        self.assertEqual(token, "dl-token")
        _, kwargs = self.session.post.call_args
        self.assertEqual(
            kwargs["json"],
            {"bucketId": "bucket-id", "fileNamePrefix": "abc.pdf", "validDurationInSeconds": 600},
        )

    def test_open_object_forwards_range(self):
        download = _response(status=206, headers={"Content-Range": "bytes 0-9/100"})
        self.session.get.side_effect = [_response(payload=AUTH_PAYLOAD), download]
        self.session.post.return_value = _response(payload={"authorizationToken": "dl-token"})

        response = self.client.open_object("abc def.pdf", range_header="bytes=0-9")

        self.assertIs(response, download)
        args, kwargs = self.session.get.call_args
        self.assertEqual(args[0], "https://f001.example.test/file/bucket%20name/abc%20def.pdf")
        self.assertEqual(kwargs["headers"], {"Authorization": "dl-token", "Range": "bytes=0-9"})
        self.assertTrue(kwargs["stream"])

    def test_open_object_upstream_error(self):
        failing = _response(status=500)
        self.session.get.side_effect = [_response(payload=AUTH_PAYLOAD), failing]
        self.session.post.return_value = _response(payload={"authorizationToken": "dl-token"})

        with self.assertRaises(ObjectStoreError):
            self.client.open_object("abc.pdf")
        failing.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
