import os
import re
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from typing import Dict, Any, Optional, Tuple, Union
from dotenv import load_dotenv

from transfer_orchestrator.errors import ProviderUnavailable
from transfer_orchestrator.middleware import get_logger
from transfer_orchestrator.schemas import (
    AccountLinkInitiated, AccountSnapshot, BalanceReport, BankIdentity, BankList,
    CustomerUpdated, DebitAccepted, LookupSuccess, MandateInitiated, MandateList,
    ProviderFailure, ProviderMandate, TransactionList,
)

load_dotenv()

HTTP_RETRY_ATTEMPTS = int(os.getenv("HTTP_RETRY_ATTEMPTS", 3))

# Failure reason codes shared by every provider result
REASON_NOT_FOUND = "not_found"
REASON_REJECTED = "rejected"
REASON_NOT_CONFIGURED = "not_configured"
REASON_TEST_MODE_RESTRICTED = "test_mode_restricted"
REASON_MISSING_CUSTOMER_PROFILE = "missing_customer_profile"
REASON_MANDATE_NOT_READY = "mandate_not_ready"

MISSING_PROFILE_MARKER = "Phone number and address are required"
TEST_MODE_MARKER = "044 is allowed"
MANDATE_NOT_READY_PATTERN = re.compile(r"not ready for use|try again in 5|wait.*minutes", re.IGNORECASE)

def _error_message(body: Dict[str, Any]) -> str:
    message = body.get("message") or body.get("error")
    data = body.get("data")
    if not message and isinstance(data, dict):
        message = data.get("message")
    return str(message or "Unknown error")

def _data(body: Dict[str, Any]) -> Dict[str, Any]:
    data = body.get("data")
    return data if isinstance(data, dict) else {}

# --- Base Client ---

class BaseClient:
    def __init__(self, base_url: str, service_name: str, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.service_name = service_name
        self.client = httpx.AsyncClient(http2=True, timeout=timeout)

    def _get_headers(self, correlation_id: Optional[str]) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        return headers

    async def _send(self, method: str, url: str, headers: Dict[str, str], json: Optional[Dict] = None,
                    params: Optional[Dict] = None) -> Tuple[int, Dict[str, Any]]:
        """Single attempt. Used for every call that must not be repeated."""
        try:
            response = await self._request(method, url, headers, json=json, params=params)
        except httpx.TransportError as e:
            raise ProviderUnavailable(self.service_name, f"{type(e).__name__}: {e}") from e
        return self._decode(response)

    async def _get(self, url: str, headers: Dict[str, str], params: Optional[Dict] = None) -> Tuple[int, Dict[str, Any]]:
        """Idempotent read, retried on transport errors."""
        try:
            response = await self._request_with_retry("GET", url, headers, params=params)
        except httpx.TransportError as e:
            raise ProviderUnavailable(self.service_name, f"{type(e).__name__}: {e}") from e
        return self._decode(response)

    async def _request(self, method: str, url: str, headers: Dict[str, str], json: Optional[Dict] = None,
                       params: Optional[Dict] = None) -> httpx.Response:
        logger = get_logger(headers.get("X-Correlation-ID"))
        logger.info(f"Calling {self.service_name}: {method} {url}")
        return await self.client.request(method, f"{self.base_url}{url}", headers=headers, json=json, params=params)

    @retry(
        stop=stop_after_attempt(HTTP_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        reraise=True,
    )
    async def _request_with_retry(self, method: str, url: str, headers: Dict[str, str],
                                  params: Optional[Dict] = None) -> httpx.Response:
        return await self._request(method, url, headers, params=params)

    def _decode(self, response: httpx.Response) -> Tuple[int, Dict[str, Any]]:
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderUnavailable(
                self.service_name, f"non-JSON response with status {response.status_code}"
            ) from e
        if not isinstance(body, dict):
            body = {"data": body}
        return response.status_code, body

    async def aclose(self):
        await self.client.aclose()

# --- Bank data aggregation provider ---

class MonoClient(BaseClient):
    """Account lookup, account data, mandates and debits on the aggregation provider."""

    def __init__(self, base_url: str, secret_key: str, timeout: float = 15):
        super().__init__(base_url, "Mono", timeout)
        self.secret_key = secret_key

    def _get_headers(self, correlation_id: Optional[str]) -> Dict[str, str]:
        headers = super()._get_headers(correlation_id)
        headers["mono-sec-key"] = self.secret_key
        return headers

    async def lookup_account(self, account_number: str, bank_code: str,
                             correlation_id: str = None) -> Union[LookupSuccess, ProviderFailure]:
        status_code, body = await self._send(
            "POST", "/v2/lookup/account", self._get_headers(correlation_id),
            json={"account_number": account_number, "bank_code": bank_code},
        )
        name = _data(body).get("name") or _data(body).get("account_name")
        if status_code < 400 and name:
            return LookupSuccess(account_name=name, source="mono")
        reason = REASON_NOT_FOUND if status_code == 404 or (status_code < 400 and not name) else REASON_REJECTED
        return ProviderFailure(reason=reason, message=_error_message(body))

    async def list_banks(self, correlation_id: str = None) -> Union[BankList, ProviderFailure]:
        status_code, body = await self._get("/v2/misc/banks", self._get_headers(correlation_id))
        if status_code >= 400 or not isinstance(body.get("data"), list):
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        banks = []
        for item in body["data"]:
            code = item.get("code") or item.get("bank_code")
            if not code:
                continue
            banks.append(BankIdentity(code=str(code), name=item.get("name"), nip_code=item.get("nip_code")))
        return BankList(banks=banks)

    async def get_account_details(self, account_id: str,
                                  correlation_id: str = None) -> Union[AccountSnapshot, ProviderFailure]:
        status_code, body = await self._get(f"/v2/accounts/{account_id}", self._get_headers(correlation_id))
        account = _data(body).get("account")
        if status_code >= 400 or not isinstance(account, dict):
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        institution = account.get("institution") or {}
        customer = account.get("customer")
        return AccountSnapshot(
            account_id=account.get("id") or account_id,
            account_name=account.get("name"),
            account_number=account.get("account_number"),
            balance_minor=account.get("balance"),
            currency=account.get("currency") or "NGN",
            bank_name=institution.get("name"),
            bank_code=institution.get("bank_code"),
            customer_id=customer.get("id") if isinstance(customer, dict) else customer,
        )

    async def get_transactions(self, account_id: str, start: Optional[str] = None, end: Optional[str] = None,
                               correlation_id: str = None) -> Union[TransactionList, ProviderFailure]:
        params = {key: value for key, value in {"start": start, "end": end}.items() if value}
        status_code, body = await self._get(
            f"/v2/accounts/{account_id}/transactions", self._get_headers(correlation_id), params=params or None
        )
        if status_code >= 400 or not isinstance(body.get("data"), list):
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        return TransactionList(transactions=body["data"])

    async def initiate_account_linking(self, customer: Dict[str, Any], redirect_url: str, reference: str,
                                       correlation_id: str = None) -> Union[AccountLinkInitiated, ProviderFailure]:
        payload = {
            "customer": {key: value for key, value in customer.items() if value},
            "scope": "auth",
            "redirect_url": redirect_url,
            "meta": {"ref": reference},
        }
        status_code, body = await self._send("POST", "/v2/accounts/initiate", self._get_headers(correlation_id), json=payload)
        data = _data(body)
        if status_code >= 400 or not data.get("mono_url"):
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        return AccountLinkInitiated(
            link_url=data["mono_url"],
            customer_id=data["customer"].get("id") if isinstance(data.get("customer"), dict) else data.get("customer"),
            reference=(data.get("meta") or {}).get("ref", reference),
        )

    async def initiate_mandate(self, customer_id: str, reference: str, description: str, amount_minor: int = 0,
                               correlation_id: str = None) -> Union[MandateInitiated, ProviderFailure]:
        payload = {
            "type": "recurring-debit",
            "debit_type": "variable",
            "method": "mandate",
            "amount": amount_minor,
            "description": description,
            "currency": "NGN",
            "reference": reference,
            "customer": {"id": customer_id},
        }
        status_code, body = await self._send("POST", "/v2/payments/initiate", self._get_headers(correlation_id), json=payload)
        data = _data(body)
        link = body.get("payment_link") or data.get("link") or data.get("mono_url")
        if status_code < 400 and link:
            return MandateInitiated(
                authorization_url=link,
                reference=body.get("reference") or data.get("reference") or reference,
            )
        message = _error_message(body)
        if MISSING_PROFILE_MARKER.lower() in message.lower():
            return ProviderFailure(reason=REASON_MISSING_CUSTOMER_PROFILE, message=message)
        return ProviderFailure(reason=REASON_REJECTED, message=message)

    async def update_customer(self, customer_id: str, phone: Optional[str], address: str,
                              correlation_id: str = None) -> Union[CustomerUpdated, ProviderFailure]:
        payload = {"address": address}
        if phone:
            payload["phone"] = phone
        status_code, body = await self._send(
            "PATCH", f"/v2/customers/{customer_id}", self._get_headers(correlation_id), json=payload
        )
        if status_code >= 400:
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        return CustomerUpdated()

    async def list_mandates(self, customer_id: str, correlation_id: str = None) -> Union[MandateList, ProviderFailure]:
        status_code, body = await self._get(
            "/v3/payments/mandates", self._get_headers(correlation_id), params={"customer": customer_id}
        )
        items = body.get("data")
        if isinstance(items, dict):
            items = items.get("mandates") or items.get("data")
        if status_code >= 400 or not isinstance(items, list):
            return ProviderFailure(reason=REASON_REJECTED, message=_error_message(body))
        mandates = [
            ProviderMandate(
                id=item.get("id") or item.get("mandate_id"),
                reference=item.get("reference"),
                status=item.get("status"),
                approved=bool(item.get("approved")),
                ready_to_debit=bool(item.get("ready_to_debit")),
                account_number=item.get("account_number"),
            )
            for item in items
        ]
        return MandateList(mandates=mandates)

    async def balance_inquiry(self, mandate_id: str, amount_minor: int,
                              correlation_id: str = None) -> Union[BalanceReport, ProviderFailure]:
        status_code, body = await self._get(
            f"/v3/payments/mandates/{mandate_id}/balance-inquiry",
            self._get_headers(correlation_id), params={"amount": amount_minor},
        )
        data = _data(body)
        if status_code < 400 and "has_sufficient_balance" in data:
            return BalanceReport(
                has_sufficient_balance=bool(data["has_sufficient_balance"]),
                account_balance_minor=data.get("account_balance"),
            )
        return self._mandate_failure(body)

    async def debit_mandate(self, mandate_id: str, amount_minor: int, reference: str, narration: str,
                            beneficiary_account_number: str, beneficiary_nip_code: str,
                            correlation_id: str = None) -> Union[DebitAccepted, ProviderFailure]:
        payload = {
            "amount": amount_minor,
            "reference": reference,
            "narration": narration,
            "fee_bearer": "business",
            "beneficiary": {"nuban": beneficiary_account_number, "nip_code": beneficiary_nip_code},
        }
        status_code, body = await self._send(
            "POST", f"/v3/payments/mandates/{mandate_id}/debit", self._get_headers(correlation_id), json=payload
        )
        if status_code < 400 and body.get("status") not in ("failed", "error"):
            data = _data(body)
            return DebitAccepted(reference=data.get("reference_number") or data.get("reference") or reference,
                                 provider_status=data.get("status") or body.get("status"))
        return self._mandate_failure(body)

    @staticmethod
    def _mandate_failure(body: Dict[str, Any]) -> ProviderFailure:
        message = _error_message(body)
        if MANDATE_NOT_READY_PATTERN.search(message):
            return ProviderFailure(reason=REASON_MANDATE_NOT_READY, message=message)
        return ProviderFailure(reason=REASON_REJECTED, message=message)

# --- Fallback recipient verification provider ---

class FlutterwaveClient(BaseClient):
    def __init__(self, base_url: str, secret_key: str, timeout: float = 15):
        super().__init__(base_url, "Flutterwave", timeout)
        self.secret_key = secret_key

    def _get_headers(self, correlation_id: Optional[str]) -> Dict[str, str]:
        headers = super()._get_headers(correlation_id)
        headers["Authorization"] = f"Bearer {self.secret_key}"
        return headers

    async def resolve_account(self, account_number: str, bank_code: str,
                              correlation_id: str = None) -> Union[LookupSuccess, ProviderFailure]:
        if not self.secret_key:
            return ProviderFailure(reason=REASON_NOT_CONFIGURED, message="Fallback verification key not configured")
        status_code, body = await self._send(
            "POST", "/v3/accounts/resolve", self._get_headers(correlation_id),
            json={"account_number": account_number, "account_bank": bank_code},
        )
        name = _data(body).get("account_name")
        if status_code < 400 and body.get("status") == "success" and name:
            return LookupSuccess(account_name=name, source="flutterwave")
        message = _error_message(body)
        if TEST_MODE_MARKER in message:
            return ProviderFailure(reason=REASON_TEST_MODE_RESTRICTED, message=message)
        return ProviderFailure(reason=REASON_REJECTED, message=message)
