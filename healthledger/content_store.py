"""
Content-addressed storage for encrypted record payloads.

Writes go to the Pinata pinning API; reads try the configured gateway and
then the public IPFS gateways in a fixed order. Upload policy (size limit
and file-kind allow-list) is checked locally before any network call.
"""

import json
import logging
import os
from datetime import datetime, timezone

import requests

from healthledger.constants import (
    ALLOWED_EXTENSIONS,
    CONTENT_TYPES,
    FALLBACK_GATEWAYS,
    GATEWAY_TIMEOUT,
    MAX_UPLOAD_BYTES,
    PINATA_API_KEY,
    PINATA_API_URL,
    PINATA_GATEWAY_URL,
    PINATA_SECRET_KEY,
)
from healthledger.errors import ContentStoreUnavailable, PayloadRejected
from healthledger.fallback import first_success

logger = logging.getLogger(__name__)


def get_content_type(ext):
    return CONTENT_TYPES.get(ext.lower(), "application/octet-stream")


def validate_upload(data, file_name, max_bytes=MAX_UPLOAD_BYTES):
    """
    Check an upload against the size limit and the file-kind allow-list.

    Returns:
        str: the lowercased file extension

    Raises:
        PayloadRejected: if the payload is too large or of a disallowed kind
    """
    if len(data) > max_bytes:
        size_mb = len(data) / (1024 * 1024)
        raise PayloadRejected(f"File size {size_mb:.2f}MB exceeds {max_bytes / (1024 * 1024):.0f}MB limit")
    ext = os.path.splitext(file_name)[1].lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise PayloadRejected(f"Invalid file type {ext or '(none)'}. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}")
    return ext


class ContentStoreClient:
    def __init__(self, api_url=PINATA_API_URL, api_key=PINATA_API_KEY, secret_key=PINATA_SECRET_KEY,
                 gateway_url=PINATA_GATEWAY_URL, fallback_gateways=None, timeout=GATEWAY_TIMEOUT,
                 max_bytes=MAX_UPLOAD_BYTES):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.secret_key = secret_key
        self.gateway_url = gateway_url.rstrip("/")
        self.fallback_gateways = list(FALLBACK_GATEWAYS if fallback_gateways is None else fallback_gateways)
        self.timeout = timeout
        self.max_bytes = max_bytes
        if not api_key or not secret_key:
            logger.warning("Missing Pinata API credentials; uploads will fail")

    @property
    def gateways(self):
        return [self.gateway_url] + [g for g in self.fallback_gateways if g.rstrip("/") != self.gateway_url]

    def _auth_headers(self):
        return {
            "pinata_api_key": self.api_key,
            "pinata_secret_api_key": self.secret_key,
        }

    def _post(self, path, **kwargs):
        try:
            response = requests.post(f"{self.api_url}{path}", timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Content store upload to {path} failed: {e}")
            raise ContentStoreUnavailable(f"Upload failed: {e}") from e

    def test_connection(self):
        try:
            response = requests.get(
                f"{self.api_url}/data/testAuthentication",
                headers=self._auth_headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            logger.info("Pinata connection successful")
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Pinata connection failed: {e}")
            raise ContentStoreUnavailable(f"Failed to connect to Pinata: {e}") from e

    def put_file(self, data, file_name, metadata=None):
        """
        Upload an encrypted file and return its content identifier.

        Args:
            data: The file bytes
            file_name: Original file name; its extension selects the kind
            metadata: Extra key/values stored alongside the pin

        Returns:
            dict: cid, size, url, file_name and file_type of the upload
        """
        ext = validate_upload(data, file_name, self.max_bytes)
        pinata_metadata = {
            "name": file_name,
            "keyvalues": {
                "uploadedAt": datetime.now(timezone.utc).isoformat(),
                "fileType": ext,
                **(metadata or {}),
            },
        }
        logger.info(f"Uploading file to content store: {file_name}")
        result = self._post(
            "/pinning/pinFileToIPFS",
            files={"file": (file_name, data, get_content_type(ext))},
            data={
                "pinataMetadata": json.dumps(pinata_metadata),
                "pinataOptions": json.dumps({"cidVersion": 1}),
            },
            headers=self._auth_headers(),
        )
        cid = result["IpfsHash"]
        logger.info(f"Uploaded {file_name} -> {cid}")
        return {
            "cid": cid,
            "size": result.get("PinSize"),
            "url": self.file_url(cid),
            "file_name": file_name,
            "file_type": ext,
        }

    def put_json(self, document, name="data.json"):
        size = len(json.dumps(document).encode())
        if size > self.max_bytes:
            raise PayloadRejected(
                f"Document size {size / (1024 * 1024):.2f}MB exceeds {self.max_bytes / (1024 * 1024):.0f}MB limit"
            )
        payload = {
            "pinataContent": document,
            "pinataMetadata": {
                "name": name,
                "keyvalues": {"uploadedAt": datetime.now(timezone.utc).isoformat(), "type": "json"},
            },
        }
        result = self._post(
            "/pinning/pinJSONToIPFS",
            json=payload,
            headers={"Content-Type": "application/json", **self._auth_headers()},
        )
        cid = result["IpfsHash"]
        return {"cid": cid, "url": self.file_url(cid)}

    def _fetch_from(self, gateway, cid):
        url = f"{gateway.rstrip('/')}/{cid}"
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.content
        except requests.exceptions.RequestException as e:
            raise ContentStoreUnavailable(f"Gateway {gateway} failed for {cid}: {e}") from e

    def get(self, cid):
        """Fetch raw bytes for a content identifier from the first gateway that answers."""
        strategies = [(gateway, lambda g=gateway: self._fetch_from(g, cid)) for gateway in self.gateways]
        try:
            return first_success(strategies)
        except ContentStoreUnavailable as e:
            logger.error(f"All gateways failed for {cid}")
            raise ContentStoreUnavailable(f"Failed to retrieve content for CID {cid}") from e

    def get_json(self, cid):
        return json.loads(self.get(cid))

    def file_url(self, cid):
        return f"{self.gateway_url}/{cid}"
