"""
Constants for the HealthLedger backend.

This module reads process configuration from the environment (and an
optional .env file) and defines the role names and upload policy used
throughout the application.
"""

import os
import secrets
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Role definitions
ROLES = {
    "PATIENT": "patient",
    "DOCTOR": "doctor",
    "DIAGNOSTIC": "diagnostic",
}

ADMIN_SUBJECT = "admin"

# Relational cache
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///healthledger.db")

# Ledger
LEDGER_RPC_URL = os.getenv("LEDGER_RPC_URL", "http://127.0.0.1:8545")
CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS", "")
CONTRACT_ABI_PATH = os.getenv("CONTRACT_ABI_PATH", "artifacts/contracts/HealthLedger.sol/HealthLedger.json")
LEDGER_TIMEOUT = float(os.getenv("LEDGER_TIMEOUT", "10"))

# Content store (Pinata pinning API + public IPFS gateways)
PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud")
PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
PINATA_SECRET_KEY = os.getenv("PINATA_SECRET_KEY", "")
PINATA_GATEWAY_URL = os.getenv("PINATA_GATEWAY_URL", "https://gateway.pinata.cloud/ipfs")
FALLBACK_GATEWAYS = [
    "https://ipfs.io/ipfs",
    "https://cloudflare-ipfs.com/ipfs",
    "https://dweb.link/ipfs",
]
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "15"))

# Upload policy
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(1024 * 1024)))
CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}
ALLOWED_EXTENSIONS = set(CONTENT_TYPES)

# Credentials
TOKEN_SECRET = os.getenv("TOKEN_SECRET") or secrets.token_hex(32)
SESSION_EXPIRATION = int(os.getenv("SESSION_EXPIRATION", "3600"))  # 1 hour
ADMIN_TOKEN_EXPIRATION = int(os.getenv("ADMIN_TOKEN_EXPIRATION", "3600"))
API_KEY = os.getenv("API_KEY", "")
API_SECRET = os.getenv("API_SECRET", "")

# Seconds a coalesced reconciliation waits for the in-flight one
SYNC_WAIT_TIMEOUT = float(os.getenv("SYNC_WAIT_TIMEOUT", "30"))
