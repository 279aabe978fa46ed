# Overview: SOAP/XML client for the Verifone R360 loyalty and invoicing service.

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx
from flask import current_app

from ..money import ZERO, round2

"""
Verifone R360 Client

Two operations are used: GetCustomers (loyalty balance lookup by cellular
number) and CreateInvoice (tax invoice + credit-card receipt).

Transport problems (timeouts, HTTP >= 400, unparsable XML, a response with no
result node, missing credentials) raise ExternalServiceError. A well-formed
response whose RequestResult is not successful is returned as SoapFailure.
"""

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
TEMPURI_NS = "http://tempuri.org/"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XSD_NS = "http://www.w3.org/2001/XMLSchema"

XML_DECLARATION = '<?xml version="1.0" encoding="utf-8"?>\n'


class ExternalServiceError(Exception):
    pass


@dataclass(frozen=True)
class VerifoneCustomer:
    is_club_member: bool
    credit_points: Decimal
    customer_no: str | None = None


@dataclass(frozen=True)
class CustomerLookupOk:
    customer: VerifoneCustomer | None
    status: int = 0
    description: str | None = None
    success: bool = True


@dataclass(frozen=True)
class CreateInvoiceOk:
    invoice_no: str | None
    store_no: str | None = None
    customer_no: str | None = None
    create_date: str | None = None
    create_time: str | None = None
    status: int = 0
    description: str | None = None
    success: bool = True

    def to_dict(self) -> dict:
        return {
            "success": True,
            "status": self.status,
            "status_description": self.description,
            "invoice_no": self.invoice_no,
            "store_no": self.store_no,
            "customer_no": self.customer_no,
            "create_date": self.create_date,
            "create_time": self.create_time,
        }


@dataclass(frozen=True)
class SoapFailure:
    status: int | None
    description: str | None
    success: bool = False

    def to_dict(self) -> dict:
        return {"success": False, "status": self.status, "status_description": self.description}


# =============================================================================
# Value helpers
# =============================================================================

def to_local_phone(phone: str | None) -> str | None:
    """
    Convert an E.164 Israeli number to the local 0XXXXXXXXX form.

    "+972501234567" -> "0501234567". Already-local numbers pass through.
    Returns None when the number cannot be converted.
    """
    if not phone or not phone.strip():
        return None
    digits = re.sub(r"\D", "", phone)

    if digits.startswith("972"):
        rest = digits[3:]
        if 8 <= len(rest) <= 9:
            return f"0{rest}"
        return None
    if digits.startswith("0") and 9 <= len(digits) <= 10:
        return digits
    return None


def _to_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in ("true", "1", "yes")


def _to_int(value: str | None) -> int:
    match = re.match(r"^\s*[+-]?\d+", value or "")
    return int(match.group(0)) if match else 0


def _to_points(value: str | None) -> Decimal:
    try:
        points = round2(Decimal((value or "0").strip() or "0"))
    except InvalidOperation:
        return ZERO
    return max(ZERO, points)


def _text(node: ET.Element | None, tag: str) -> str | None:
    if node is None:
        return None
    child = node.find(tag)
    if child is None or child.text is None:
        return None
    return child.text.strip()


def _strip_namespaces(root: ET.Element) -> ET.Element:
    for elem in root.iter():
        if isinstance(elem.tag, str) and "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]
    return root


# =============================================================================
# Client
# =============================================================================

class VerifoneClient:
    def __init__(
        self,
        endpoint: str,
        chain_id: str | None,
        username: str | None,
        password: str | None,
        timeout: float = 10.0,
        store_no: int = 98,
        supply_store_no: int = 13,
        http_client: httpx.Client | None = None,
        create_invoice_action: str = f"{TEMPURI_NS}CreateInvoice",
        get_customers_action: str = f"{TEMPURI_NS}GetCustomers",
    ):
        self.endpoint = endpoint
        self.chain_id = chain_id
        self.username = username
        self.password = password
        self.timeout = timeout
        self.store_no = store_no
        self.supply_store_no = supply_store_no
        self.http_client = http_client
        self.create_invoice_action = create_invoice_action
        self.get_customers_action = get_customers_action

    @classmethod
    def from_config(cls, config, http_client: httpx.Client | None = None) -> "VerifoneClient":
        return cls(
            endpoint=config["VERIFONE_ENDPOINT"],
            chain_id=config.get("VERIFONE_CHAIN_ID"),
            username=config.get("VERIFONE_USERNAME"),
            password=config.get("VERIFONE_PASSWORD"),
            timeout=float(config.get("VERIFONE_TIMEOUT_SECONDS", 10.0)),
            store_no=int(config.get("VERIFONE_STORE_NO", 98)),
            supply_store_no=int(config.get("VERIFONE_SUPPLY_STORE_NO", 13)),
            http_client=http_client,
            create_invoice_action=config.get("VERIFONE_CREATE_INVOICE_ACTION", f"{TEMPURI_NS}CreateInvoice"),
            get_customers_action=config.get("VERIFONE_GET_CUSTOMERS_ACTION", f"{TEMPURI_NS}GetCustomers"),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.chain_id and self.username and self.password)

    def _require_credentials(self):
        if not self.has_credentials:
            raise ExternalServiceError("Missing Verifone credentials")

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _post(self, envelope: str, action: str) -> str:
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": action}
        try:
            if self.http_client is not None:
                resp = self.http_client.post(
                    self.endpoint, content=envelope.encode("utf-8"), headers=headers, timeout=self.timeout
                )
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.post(self.endpoint, content=envelope.encode("utf-8"), headers=headers)
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"Timeout after {self.timeout}s calling Verifone") from exc
        except httpx.RequestError as exc:
            raise ExternalServiceError(f"Verifone request failed: {exc}") from exc

        if resp.status_code >= 400:
            current_app.logger.error("Verifone HTTP %s: %s", resp.status_code, resp.text[:500])
            raise ExternalServiceError(f"HTTP {resp.status_code}")
        return resp.text

    def _result_node(self, xml_text: str, operation: str) -> ET.Element:
        try:
            root = _strip_namespaces(ET.fromstring(xml_text))
        except ET.ParseError as exc:
            raise ExternalServiceError("Failed to parse Verifone XML response") from exc

        body = root.find("Body")
        if body is None or len(body) == 0:
            raise ExternalServiceError("Malformed Verifone response")

        response = body.find(f"{operation}Response")
        if response is None:
            response = body[0]
        result = response.find(f"{operation}Result")
        if result is None:
            result = body.find(f"{operation}Result")
        if result is None:
            raise ExternalServiceError(f"Missing {operation}Result in Verifone response")
        return result

    @staticmethod
    def _request_result(result: ET.Element) -> tuple[bool, int, str | None]:
        meta = result.find("RequestResult")
        if meta is None:
            meta = result
        is_success = _to_bool(_text(meta, "IsSuccess") or _text(meta, "Success"))
        status = _to_int(_text(meta, "Status"))
        description = _text(meta, "StatusDescription") or _text(meta, "Message")
        return is_success, status, description

    # -------------------------------------------------------------------------
    # GetCustomers
    # -------------------------------------------------------------------------

    def build_get_customers_envelope(self, cellular: str) -> str:
        ET.register_namespace("soap", SOAP_ENV_NS)
        ET.register_namespace("xsi", XSI_NS)
        ET.register_namespace("xsd", XSD_NS)

        envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
        body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        op = ET.SubElement(body, "GetCustomers", {"xmlns": TEMPURI_NS})
        self._user_block(op, "")
        request = ET.SubElement(op, "Request")
        ET.SubElement(request, "Cellular").text = cellular
        return XML_DECLARATION + ET.tostring(envelope, encoding="unicode")

    def get_customer_by_cellular(self, phone: str | None) -> CustomerLookupOk | SoapFailure:
        self._require_credentials()
        if not phone:
            return SoapFailure(status=None, description="Missing phone number")
        local_phone = to_local_phone(phone)
        if not local_phone:
            current_app.logger.warning("Cannot convert %s to a local phone number", phone)
            return SoapFailure(status=None, description="Invalid phone format")

        xml_text = self._post(self.build_get_customers_envelope(local_phone), self.get_customers_action)
        result = self._result_node(xml_text, "GetCustomers")
        is_success, status, description = self._request_result(result)
        if not is_success or status != 0:
            return SoapFailure(status=status, description=description)

        customer = result.find("Data/Customers/Customer")
        if customer is None:
            return CustomerLookupOk(customer=None, status=status, description=description)

        return CustomerLookupOk(
            customer=VerifoneCustomer(
                is_club_member=_to_bool(_text(customer, "IsClubMember")),
                credit_points=_to_points(_text(customer, "CreditPoints")),
                customer_no=_text(customer, "CustomerNo"),
            ),
            status=status,
            description=description,
        )

    # -------------------------------------------------------------------------
    # CreateInvoice
    # -------------------------------------------------------------------------

    def _user_block(self, parent: ET.Element, prefix: str):
        user = ET.SubElement(parent, f"{prefix}User")
        ET.SubElement(user, f"{prefix}ChainID").text = str(self.chain_id or "")
        ET.SubElement(user, f"{prefix}Username").text = str(self.username or "")
        ET.SubElement(user, f"{prefix}Password").text = str(self.password or "")

    def build_create_invoice_envelope(self, document) -> str:
        """Serialize an InvoiceDocument into the CreateInvoice SOAP envelope."""
        self._require_credentials()
        ET.register_namespace("soapenv", SOAP_ENV_NS)
        ET.register_namespace("tem", TEMPURI_NS)
        tem = f"{{{TEMPURI_NS}}}"

        def sub(parent, tag, text=None):
            node = ET.SubElement(parent, f"{tem}{tag}")
            if text is not None:
                node.text = str(text)
            return node

        envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
        ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
        body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        op = sub(body, "CreateInvoice")
        self._user_block(op, tem)
        request = sub(op, "Request")

        totals = document.totals
        invoice = sub(request, "Invoice")
        sub(invoice, "DocNo", 0)
        sub(invoice, "DocType", 1)
        sub(invoice, "StoreNo", self.store_no)
        sub(invoice, "CustomerNo", document.customer_no)
        sub(invoice, "CustomerName", document.customer_name)
        sub(invoice, "CreateDate", document.create_date)
        sub(invoice, "SupplyStoreNo", self.supply_store_no)
        sub(invoice, "CurrencyID", 1)
        sub(invoice, "CurrencyRate", 1)
        sub(invoice, "PriceList", 1)
        sub(invoice, "NotebookID", 2)
        sub(invoice, "Published", "true")
        for tag, value in totals.to_dict().items():
            sub(invoice, tag, value)

        lines = sub(invoice, "Lines")
        for line in document.lines:
            node = sub(lines, "DocumentLines")
            for tag, value in line.to_dict().items():
                sub(node, tag, value)

        receipt = document.receipt
        receipt_node = sub(request, "Receipt")
        sub(receipt_node, "ReceiptNo", 0)
        sub(receipt_node, "StoreNo", self.store_no)
        sub(receipt_node, "CustomerNo", document.customer_no)
        sub(receipt_node, "CustomerName", document.customer_name)
        sub(receipt_node, "CreateDate", document.create_date)
        sub(receipt_node, "CurrencyID", 1)
        sub(receipt_node, "CurrencyRate", 1)
        sub(receipt_node, "RecieptTotal", str(receipt.total))

        receipt_lines = sub(sub(receipt_node, "receiptLines"), "ReceiptLines")
        sub(receipt_lines, "Sum", str(receipt.total))
        sub(receipt_lines, "paymentType", receipt.payment_type)
        card = sub(receipt_lines, "creditCard")
        sub(card, "PaymentType", receipt.card_payment_type)
        sub(card, "FirstPayment", str(receipt.first_payment))
        sub(card, "OtherPayments", str(receipt.other_payments))
        sub(card, "CreditCardNo", receipt.credit_card_no)
        sub(card, "ExpireDate", receipt.expire_date)
        sub(card, "CreditCardType", receipt.credit_card_type)
        sub(card, "CustomerIdentity", receipt.customer_identity)
        sub(card, "ClearanceApproval", receipt.clearance_approval)
        sub(card, "NumberOfPayments", receipt.number_of_payments)

        return XML_DECLARATION + ET.tostring(envelope, encoding="unicode")

    def create_invoice(self, envelope: str) -> CreateInvoiceOk | SoapFailure:
        self._require_credentials()
        current_app.logger.info("Sending Verifone CreateInvoice (%d bytes)", len(envelope))

        xml_text = self._post(envelope, self.create_invoice_action)
        result = self._result_node(xml_text, "CreateInvoice")
        is_success, status, description = self._request_result(result)
        if not is_success or status != 0:
            current_app.logger.error("Verifone CreateInvoice rejected: status=%s %s", status, description)
            return SoapFailure(status=status, description=description)

        data = result.find("Data")
        return CreateInvoiceOk(
            invoice_no=_text(data, "InvoiceNo"),
            store_no=_text(data, "StoreNo"),
            customer_no=_text(data, "CustomerNo"),
            create_date=_text(data, "CreateDate"),
            create_time=_text(data, "CreateTime"),
            status=status,
            description=description,
        )


def client_from_app() -> VerifoneClient:
    return VerifoneClient.from_config(current_app.config)
