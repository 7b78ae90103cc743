"""
Domain Models and Data Structures

Every persisted record serializes to the camelCase JSON layout used by the
client store ("sentinel_users" / "sentinel_session").
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Any, Optional, List, Tuple


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class FlowPhase(str, Enum):
    IDLE = "Idle"
    SCANNING_DOCUMENT = "ScanningDocument"
    CAPTURING_BIOMETRIC = "CapturingBiometric"
    ANALYZING = "Analyzing"
    COMPLETED = "Completed"
    FAILED = "Failed"


def _str(data: Dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _opt_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _int(data: Dict[str, Any], key: str) -> int:
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{key} must be a number")
    return int(value)


@dataclass(frozen=True)
class ExtractedData:
    """Document fields read by the analysis oracle"""
    full_name: str
    document_number: str
    document_type: str
    date_of_birth: Optional[str] = None
    expiry_date: Optional[str] = None
    issuing_country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fullName": self.full_name,
            "documentNumber": self.document_number,
            "documentType": self.document_type,
            "dateOfBirth": self.date_of_birth,
            "expiryDate": self.expiry_date,
            "issuingCountry": self.issuing_country,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedData":
        return cls(
            full_name=_str(data, "fullName"),
            document_number=_str(data, "documentNumber"),
            document_type=_str(data, "documentType"),
            date_of_birth=_opt_str(data, "dateOfBirth"),
            expiry_date=_opt_str(data, "expiryDate"),
            issuing_country=_opt_str(data, "issuingCountry"),
        )


@dataclass(frozen=True)
class FraudCheck:
    check: str
    passed: bool
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {"check": self.check, "passed": self.passed, "details": self.details}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FraudCheck":
        passed = data["passed"]
        if not isinstance(passed, bool):
            raise TypeError("passed must be a boolean")
        return cls(check=_str(data, "check"), passed=passed, details=_str(data, "details"))


@dataclass(frozen=True)
class VerificationResult:
    """One analysis outcome for a document + selfie pair; immutable once created"""
    id: str
    timestamp: int
    risk_level: RiskLevel
    risk_score: int
    face_match_score: int
    extracted_data: ExtractedData
    fraud_checks: Tuple[FraudCheck, ...]
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "riskLevel": self.risk_level.value,
            "riskScore": self.risk_score,
            "faceMatchScore": self.face_match_score,
            "extractedData": self.extracted_data.to_dict(),
            "fraudChecks": [c.to_dict() for c in self.fraud_checks],
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationResult":
        return cls(
            id=_str(data, "id"),
            timestamp=_int(data, "timestamp"),
            risk_level=RiskLevel(data["riskLevel"]),
            risk_score=_int(data, "riskScore"),
            face_match_score=_int(data, "faceMatchScore"),
            extracted_data=ExtractedData.from_dict(data["extractedData"]),
            fraud_checks=tuple(FraudCheck.from_dict(c) for c in data["fraudChecks"]),
            reasoning=_str(data, "reasoning"),
        )


@dataclass(frozen=True)
class DeviceFingerprint:
    """One observed (ip, os, browser, user agent, time) tuple"""
    ip: str
    os: str
    browser: str
    user_agent: str
    last_seen: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "os": self.os,
            "browser": self.browser,
            "userAgent": self.user_agent,
            "lastSeen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceFingerprint":
        return cls(
            ip=_str(data, "ip"),
            os=_str(data, "os"),
            browser=_str(data, "browser"),
            user_agent=_str(data, "userAgent"),
            last_seen=_int(data, "lastSeen"),
        )


@dataclass
class Session:
    """Projection of the authenticated Account, credential digest stripped"""
    id: str
    name: str
    email: str
    is_verified: bool = False
    kyc_result: Optional[VerificationResult] = None
    history: List[VerificationResult] = field(default_factory=list)
    device_history: List[DeviceFingerprint] = field(default_factory=list)
    last_known_device: Optional[DeviceFingerprint] = None
    account_created: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "isVerified": self.is_verified,
            "kycResult": self.kyc_result.to_dict() if self.kyc_result else None,
            "history": [r.to_dict() for r in self.history],
            "deviceHistory": [d.to_dict() for d in self.device_history],
            "lastKnownDevice": self.last_known_device.to_dict() if self.last_known_device else None,
            "accountCreated": self.account_created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(**_profile_fields(data))


@dataclass
class Account:
    """Durable account record, including the credential digest"""
    id: str
    name: str
    email: str
    password: str
    is_verified: bool = False
    kyc_result: Optional[VerificationResult] = None
    history: List[VerificationResult] = field(default_factory=list)
    device_history: List[DeviceFingerprint] = field(default_factory=list)
    last_known_device: Optional[DeviceFingerprint] = None
    account_created: int = 0

    def projection(self) -> Session:
        return Session(
            id=self.id,
            name=self.name,
            email=self.email,
            is_verified=self.is_verified,
            kyc_result=self.kyc_result,
            history=list(self.history),
            device_history=list(self.device_history),
            last_known_device=self.last_known_device,
            account_created=self.account_created,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = self.projection().to_dict()
        out["password"] = self.password
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(password=_str(data, "password"), **_profile_fields(data))


def _profile_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    is_verified = data["isVerified"]
    if not isinstance(is_verified, bool):
        raise TypeError("isVerified must be a boolean")
    if not isinstance(data["history"], list) or not isinstance(data["deviceHistory"], list):
        raise TypeError("history and deviceHistory must be lists")
    return {
        "id": _str(data, "id"),
        "name": _str(data, "name"),
        "email": _str(data, "email"),
        "is_verified": is_verified,
        "kyc_result": VerificationResult.from_dict(data["kycResult"]) if data.get("kycResult") else None,
        "history": [VerificationResult.from_dict(r) for r in data["history"]],
        "device_history": [DeviceFingerprint.from_dict(d) for d in data["deviceHistory"]],
        "last_known_device": DeviceFingerprint.from_dict(data["lastKnownDevice"]) if data.get("lastKnownDevice") else None,
        "account_created": _int(data, "accountCreated"),
    }


@dataclass
class FlowState:
    """Working set of one verification attempt"""
    phase: FlowPhase = FlowPhase.IDLE
    document_image: Optional[str] = None
    selfie_image: Optional[str] = None
    result: Optional[VerificationResult] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def evolve(self, **changes) -> "FlowState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        # images are large and sensitive; report presence only
        return {
            "status": self.phase.value,
            "hasDocument": self.document_image is not None,
            "hasSelfie": self.selfie_image is not None,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
            "errorKind": self.error_kind,
        }


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "user" | "model"
    text: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "text": self.text, "timestamp": self.timestamp}
