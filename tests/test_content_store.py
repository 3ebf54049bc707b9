"""
Tests for the content store client. HTTP is mocked at the requests layer.
"""

import json
import unittest
from unittest import mock

import requests

from healthledger.content_store import ContentStoreClient, get_content_type, validate_upload
from healthledger.errors import ContentStoreUnavailable, PayloadRejected


def response(content=b"", payload=None, status=200):
    r = mock.Mock()
    r.status_code = status
    r.content = content
    r.json.return_value = payload
    if status >= 400:
        r.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Error")
    else:
        r.raise_for_status.return_value = None
    return r


class ContentStoreTestCase(unittest.TestCase):
    def setUp(self):
        self.client = ContentStoreClient(
            api_url="https://api.pinata.test",
            api_key="pk",
            secret_key="sk",
            gateway_url="https://gateway.pinata.test/ipfs",
            fallback_gateways=["https://ipfs.io/ipfs", "https://dweb.link/ipfs"],
            timeout=2,
            max_bytes=1024,
        )


class TestUploadPolicy(ContentStoreTestCase):
    def test_1_content_types(self):
        self.assertEqual(get_content_type(".PDF"), "application/pdf")
        self.assertEqual(get_content_type(".png"), "image/png")
        self.assertEqual(get_content_type(".exe"), "application/octet-stream")

    def test_2_validate_upload(self):
        self.assertEqual(validate_upload(b"x", "Scan.JPG", 1024), ".jpg")
        with self.assertRaises(PayloadRejected):
            validate_upload(b"x" * 1025, "scan.jpg", 1024)
        with self.assertRaises(PayloadRejected):
            validate_upload(b"x", "notes.txt", 1024)
        with self.assertRaises(PayloadRejected):
            validate_upload(b"x", "README", 1024)

    @mock.patch("healthledger.content_store.requests.post")
    def test_3_rejected_payload_never_reaches_network(self, post):
        with self.assertRaises(PayloadRejected):
            self.client.put_file(b"x" * 2048, "report.pdf")
        with self.assertRaises(PayloadRejected):
            self.client.put_file(b"x", "malware.exe")
        post.assert_not_called()


class TestUpload(ContentStoreTestCase):
    @mock.patch("healthledger.content_store.requests.post")
    def test_1_put_file(self, post):
        post.return_value = response(payload={"IpfsHash": "bafyreport", "PinSize": 3})

        result = self.client.put_file(b"pdf", "report.pdf", {"recordType": "lab_report"})

        self.assertEqual(result["cid"], "bafyreport")
        self.assertEqual(result["url"], "https://gateway.pinata.test/ipfs/bafyreport")
        self.assertEqual(result["file_type"], ".pdf")
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://api.pinata.test/pinning/pinFileToIPFS")
        self.assertEqual(kwargs["headers"]["pinata_api_key"], "pk")
        self.assertEqual(kwargs["timeout"], 2)
        metadata = json.loads(kwargs["data"]["pinataMetadata"])
        self.assertEqual(metadata["keyvalues"]["recordType"], "lab_report")
        self.assertEqual(kwargs["files"]["file"][2], "application/pdf")

    @mock.patch("healthledger.content_store.requests.post")
    def test_2_put_json(self, post):
        post.return_value = response(payload={"IpfsHash": "bafyjson"})

        result = self.client.put_json({"a": 1}, "doc.json")

        self.assertEqual(result["cid"], "bafyjson")
        self.assertEqual(post.call_args.kwargs["json"]["pinataContent"], {"a": 1})

    @mock.patch("healthledger.content_store.requests.post")
    def test_5_oversized_json_never_reaches_network(self, post):
        with self.assertRaises(PayloadRejected):
            self.client.put_json({"blob": "x" * 2048}, "big.json")
        post.assert_not_called()

    @mock.patch("healthledger.content_store.requests.post")
    def test_3_upload_failure(self, post):
        post.side_effect = requests.exceptions.ConnectionError("refused")
        with self.assertRaises(ContentStoreUnavailable) as ctx:
            self.client.put_file(b"pdf", "report.pdf")
        self.assertEqual(ctx.exception.dependency, "content-store")

    @mock.patch("healthledger.content_store.requests.get")
    def test_4_connection_test(self, get):
        get.return_value = response(payload={"message": "Congratulations!"})
        self.assertEqual(self.client.test_connection(), {"message": "Congratulations!"})

        get.side_effect = requests.exceptions.Timeout("slow")
        with self.assertRaises(ContentStoreUnavailable):
            self.client.test_connection()


class TestRead(ContentStoreTestCase):
    def test_1_gateway_order(self):
        self.assertEqual(self.client.gateways, [
            "https://gateway.pinata.test/ipfs",
            "https://ipfs.io/ipfs",
            "https://dweb.link/ipfs",
        ])

    @mock.patch("healthledger.content_store.requests.get")
    def test_2_falls_back_to_next_gateway(self, get):
        get.side_effect = [
            requests.exceptions.Timeout("slow"),
            response(status=504),
            response(content=b"ciphertext"),
        ]

        self.assertEqual(self.client.get("bafyrec"), b"ciphertext")
        urls = [call.args[0] for call in get.call_args_list]
        self.assertEqual(urls, [
            "https://gateway.pinata.test/ipfs/bafyrec",
            "https://ipfs.io/ipfs/bafyrec",
            "https://dweb.link/ipfs/bafyrec",
        ])

    @mock.patch("healthledger.content_store.requests.get")
    def test_3_first_gateway_wins(self, get):
        get.return_value = response(content=b"ciphertext")
        self.assertEqual(self.client.get("bafyrec"), b"ciphertext")
        self.assertEqual(get.call_count, 1)

    @mock.patch("healthledger.content_store.requests.get")
    def test_4_all_gateways_fail(self, get):
        get.side_effect = requests.exceptions.ConnectionError("down")
        with self.assertRaises(ContentStoreUnavailable):
            self.client.get("bafyrec")
        self.assertEqual(get.call_count, 3)

    @mock.patch("healthledger.content_store.requests.get")
    def test_5_get_json(self, get):
        get.return_value = response(content=b'{"title": "Lipid Panel"}')
        self.assertEqual(self.client.get_json("bafyjson"), {"title": "Lipid Panel"})


if __name__ == "__main__":
    unittest.main()
