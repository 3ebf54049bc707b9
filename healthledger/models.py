from pydantic import BaseModel
from typing import Dict, List, Optional, Any


class LedgerPatient(BaseModel):
    """Patient entry as stored on-chain"""
    name: str
    dob: int  # Unix seconds
    gender: str = ""
    blood_group: str = ""
    home_address: str = ""
    email: str = ""
    wallet_address: str


class LedgerDoctor(BaseModel):
    """Doctor entry as stored on-chain"""
    name: str
    specialization: str = ""
    hospital: str = ""
    email: str = ""
    wallet_address: str


class LedgerDiagnostic(BaseModel):
    """Diagnostic center entry as stored on-chain"""
    name: str
    location: str = ""
    email: str = ""
    wallet_address: str


class LedgerRecord(BaseModel):
    """Record pointer as stored on-chain"""
    record_id: str
    patient: str
    creator: str
    cid: str
    meta: str = ""
    timestamp: int = 0


class Principal(BaseModel):
    """The subject a bearer credential was issued to"""
    wallet_address: Optional[str] = None
    role: str
    numeric_id: Optional[int] = None
    expires_at: int


class LoginRequest(BaseModel):
    role: str
    numeric_id: int
    wallet_address: str
    signature: str
    message: str


class AdminTokenRequest(BaseModel):
    api_key: str
    api_secret: str


class GrantRequest(BaseModel):
    doctor_wallet: str


class PatientProfileUpdate(BaseModel):
    """Cache-authoritative patient fields"""
    phone_number: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    allergies: Optional[str] = None
    chronic_conditions: Optional[str] = None


class EmailLookup(BaseModel):
    email: str


class SearchResponse(BaseModel):
    results: List[Dict[str, Any]]
    count: int
    query: str


class RegistrationCheck(BaseModel):
    wallet_address: Optional[str] = None
    role: Optional[str] = None
    numeric_id: Optional[int] = None


class UploadRequest(BaseModel):
    """Encrypted record payload, base64 encoded"""
    file_name: str
    content_base64: str
    metadata: Optional[Dict[str, Any]] = None
