"""
Analysis oracle adapter: forensic document check + biometric face match
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Literal, Optional

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from sentinel.core.errors import AnalysisUnavailable
from sentinel.models.models import (ExtractedData, FraudCheck, RiskLevel,
                                    VerificationResult)
from sentinel.utils.helpers import as_data_url, new_id, now_ms

log = logging.getLogger(__name__)

REQUIRED_CHECKS = (
    "Document Type Validation",
    "Structure & Layout Check",
    "Hologram/Emblem Detection",
)

ANALYSIS_PROMPT = """
You are a forensic document examiner and biometric matching system.

You will be given two images:
1. An identity document
2. A selfie of the person presenting it

STEP 1 - DOCUMENT VALIDATION
Decide whether image 1 is a genuine government-issued identity document
(national ID card such as Aadhaar, PAN or Voter ID, passport, driving licence).
Check the expected headers, emblems, holograms, number formats and field layout
for the detected type. Look for tampering: pasted-on text, font or alignment
errors, inconsistent background noise.

Reject immediately (riskLevel "High", riskScore 100, documentType "Unknown" or
"Invalid") when the image is not an identity document (credit card, student ID,
membership card, random photo) or its structure is clearly wrong.

STEP 2 - BIOMETRIC MATCH (only if the document is valid)
Compare facial landmarks (eyes, nose, jaw, face shape) between the document photo
and the selfie. Ignore hair, glasses, makeup and ageing. Check the selfie for
liveness problems such as a photo of a screen (moire patterns) or a printout.

Return STRICT JSON ONLY.

Format:
{
  "riskLevel": "Low" | "Medium" | "High",
  "riskScore": integer 0-100 (100 = fraudulent or invalid document),
  "faceMatchScore": integer 0-100 (similarity confidence),
  "extractedData": {
    "fullName": "string",
    "documentNumber": "string",
    "documentType": "string",
    "dateOfBirth": "string or null",
    "expiryDate": "string or null",
    "issuingCountry": "string or null"
  },
  "fraudChecks": [
    {"check": "string", "passed": true/false, "details": "string"}
  ],
  "reasoning": "detailed forensic summary"
}

fraudChecks MUST include "Document Type Validation", "Structure & Layout Check"
and "Hologram/Emblem Detection".
"""


class ExtractedDataPayload(BaseModel):
    fullName: str
    documentNumber: str
    documentType: str
    dateOfBirth: Optional[str] = None
    expiryDate: Optional[str] = None
    issuingCountry: Optional[str] = None


class FraudCheckPayload(BaseModel):
    check: str
    passed: bool
    details: str


class AnalysisPayload(BaseModel):
    """Oracle output contract; every top-level field is required"""
    riskLevel: Literal["Low", "Medium", "High"]
    riskScore: int = Field(ge=0, le=100, strict=True)
    faceMatchScore: int = Field(ge=0, le=100, strict=True)
    extractedData: ExtractedDataPayload
    fraudChecks: List[FraudCheckPayload]
    reasoning: str


def parse_model_output(text: str) -> Dict[str, Any]:
    """Pull the JSON object out of a model reply, tolerating code fences."""
    if not text:
        raise ValueError("No response from analysis model")
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if not match:
        raise ValueError("No JSON found in model output")
    return json.loads(match.group())


def to_result(payload: AnalysisPayload) -> VerificationResult:
    data = payload.extractedData
    checks = tuple(FraudCheck(check=c.check, passed=c.passed, details=c.details) for c in payload.fraudChecks)
    missing = [name for name in REQUIRED_CHECKS if name not in {c.check for c in checks}]
    if missing:
        log.info("Analysis omitted expected checks: %s", ", ".join(missing))
    return VerificationResult(
        id=new_id(),
        timestamp=now_ms(),
        risk_level=RiskLevel(payload.riskLevel),
        risk_score=payload.riskScore,
        face_match_score=payload.faceMatchScore,
        extracted_data=ExtractedData(
            full_name=data.fullName,
            document_number=data.documentNumber,
            document_type=data.documentType,
            date_of_birth=data.dateOfBirth,
            expiry_date=data.expiryDate,
            issuing_country=data.issuingCountry,
        ),
        fraud_checks=checks,
        reasoning=payload.reasoning,
    )


class AnalysisService:
    """Calls the vision model with (document, selfie) and returns a VerificationResult"""

    def __init__(self, api_key: Optional[str], model: str = "gpt-4.1"):
        self.api_key = api_key
        self.model = model

    def _complete(self, document_image: str, selfie_image: str) -> str:
        client = OpenAI(api_key=self.api_key)
        response = client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": as_data_url(document_image)}},
                        {"type": "image_url", "image_url": {"url": as_data_url(selfie_image)}},
                    ],
                }
            ],
            response_format={"type": "json_object"},
            temperature=0,
        )
        return response.choices[0].message.content or ""

    async def analyze(self, document_image: str, selfie_image: str) -> VerificationResult:
        """
        Run one analysis. Every failure (missing key, transport, malformed or
        schema-invalid output) surfaces as AnalysisUnavailable.
        """
        if not self.api_key:
            raise AnalysisUnavailable("API Key is missing. Please set OPENAI_API_KEY.")

        try:
            text = await asyncio.to_thread(self._complete, document_image, selfie_image)
        except OpenAIError as e:
            log.error("Analysis request failed: %s", e)
            raise AnalysisUnavailable(f"Analysis service error: {e}") from e

        try:
            payload = AnalysisPayload.model_validate(parse_model_output(text))
        except (ValueError, ValidationError) as e:
            log.error("Analysis returned unusable output: %s", e)
            raise AnalysisUnavailable("Analysis service returned an invalid response") from e

        result = to_result(payload)
        log.info("Analysis %s complete: risk=%s score=%s face=%s", result.id,
                 result.risk_level.value, result.risk_score, result.face_match_score)
        return result
