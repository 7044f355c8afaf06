"""
Payroll Recon - E-Signature Provider

Outbound client for the signature provider (Dropbox Sign, formerly
HelloSign) plus verification of its webhook event hash.

HelloSign API docs: https://developers.hellosign.com/api/reference/
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from payroll_recon.config import settings
from payroll_recon.utils.error_handling import ESignatureAPIException

logger = logging.getLogger(__name__)


# ===========================================
# RESULT TYPES
# ===========================================

@dataclass
class EnvelopeRequest:
    """What the provider needs to send one receipt for signature."""
    template_id: str
    template_role_name: str
    recipient_name: str
    recipient_email: str
    subject: str
    message: Optional[str] = None
    document: Optional[bytes] = None
    document_name: str = "receipt.pdf"
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class EnvelopeResult:
    envelope_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EnvelopeStatus:
    envelope_id: str
    status: str
    is_complete: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


def derive_request_status(signature_request: Dict[str, Any]) -> str:
    """Single status string for a HelloSign signature_request object."""
    if signature_request.get("is_complete"):
        return "completed"
    if signature_request.get("is_declined"):
        return "declined"
    if signature_request.get("has_error"):
        return "error"
    signatures = signature_request.get("signatures") or []
    if any(s.get("status_code") == "signed" for s in signatures):
        return "partially_signed"
    return "sent"


def verify_hellosign_event_hash(
    event_time: str,
    event_type: str,
    event_hash: str,
    secret: str,
) -> bool:
    """
    Check a callback's event_hash.

    HelloSign signs each event as HMAC-SHA256(key=api key, msg=event_time + event_type).
    """
    if not event_hash or not secret:
        return False
    expected = hmac.new(
        secret.encode("utf-8"),
        f"{event_time}{event_type}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, event_hash)


# ===========================================
# ABSTRACT PROVIDER
# ===========================================

class ESignatureProvider(ABC):
    """Abstract base class for e-signature providers."""

    def missing_configuration(self) -> List[str]:
        """Names of settings the provider cannot work without."""
        return []

    @abstractmethod
    async def send_with_template(self, request: EnvelopeRequest) -> EnvelopeResult:
        """Create and send a signature request. Raises ESignatureAPIException."""
        pass

    @abstractmethod
    async def get_request_status(self, envelope_id: str) -> EnvelopeStatus:
        """Current status of a signature request. Raises ESignatureAPIException."""
        pass


# ===========================================
# HELLOSIGN
# ===========================================

class HelloSignProvider(ESignatureProvider):
    """
    Dropbox Sign (HelloSign) provider.

    Authenticates with HTTP basic auth, the API key as user name and an
    empty password. Requests are form-encoded; the receipt PDF rides along
    as ``files[0]`` so the signer sees the computed figures.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        test_mode: Optional[bool] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.hellosign_api_key
        self.base_url = (base_url or settings.hellosign_api_base).rstrip("/")
        self.client_id = client_id if client_id is not None else settings.hellosign_client_id
        self.test_mode = settings.hellosign_test_mode if test_mode is None else test_mode

    def missing_configuration(self) -> List[str]:
        return [] if self.api_key else ["HELLOSIGN_API_KEY"]

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the HelloSign API.

        Raises:
            ESignatureAPIException: On transport errors and 4xx/5xx responses
        """
        url = f"{self.base_url}{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    auth=(self.api_key, ""),
                    data=data,
                    files=files,
                )
        except httpx.TimeoutException as e:
            logger.error(f"HelloSign API timeout: {method} {endpoint}")
            raise ESignatureAPIException("E-signature request timed out", original_error=e)
        except httpx.RequestError as e:
            logger.error(f"HelloSign API request error: {e}")
            raise ESignatureAPIException(f"Network error: {e}", original_error=e)

        logger.debug(f"HelloSign {method} {endpoint}: status={response.status_code}")
        try:
            result = response.json()
        except ValueError:
            result = {}

        if response.status_code >= 400:
            error = result.get("error") if isinstance(result, dict) else None
            message = (error.get("error_msg") if isinstance(error, dict) else None) or f"HTTP {response.status_code}"
            logger.error(f"HelloSign API error: {message}")
            raise ESignatureAPIException(message, status_code=response.status_code)
        if not isinstance(result, dict):
            logger.error(f"HelloSign API returned a non-object body for {method} {endpoint}")
            raise ESignatureAPIException("Unexpected response from e-signature provider", status_code=response.status_code)
        return result

    async def send_with_template(self, request: EnvelopeRequest) -> EnvelopeResult:
        role = request.template_role_name
        data: Dict[str, Any] = {
            "test_mode": "1" if self.test_mode else "0",
            "template_ids[0]": request.template_id,
            "subject": request.subject,
            f"signers[{role}][name]": request.recipient_name,
            f"signers[{role}][email_address]": request.recipient_email,
        }
        if request.message:
            data["message"] = request.message
        if self.client_id:
            data["client_id"] = self.client_id
        for key, value in request.metadata.items():
            data[f"metadata[{key}]"] = value

        files = None
        if request.document:
            files = {"files[0]": (request.document_name, request.document, "application/pdf")}

        logger.info(f"Sending HelloSign signature request for template {request.template_id}")
        result = await self._make_request("POST", "/signature_request/send_with_template", data=data, files=files)

        signature_request = result.get("signature_request") or {}
        if not isinstance(signature_request, dict):
            signature_request = {}
        envelope_id = signature_request.get("signature_request_id")
        if not envelope_id:
            raise ESignatureAPIException("Provider response did not include a signature_request_id")
        return EnvelopeResult(
            envelope_id=envelope_id,
            status=derive_request_status(signature_request),
            raw=signature_request,
        )

    async def get_request_status(self, envelope_id: str) -> EnvelopeStatus:
        result = await self._make_request("GET", f"/signature_request/{envelope_id}")
        signature_request = result.get("signature_request") or {}
        if not isinstance(signature_request, dict):
            signature_request = {}
        return EnvelopeStatus(
            envelope_id=envelope_id,
            status=derive_request_status(signature_request),
            is_complete=bool(signature_request.get("is_complete")),
            raw=signature_request,
        )


def get_esignature_provider() -> ESignatureProvider:
    """FastAPI dependency returning the configured provider."""
    return HelloSignProvider()
