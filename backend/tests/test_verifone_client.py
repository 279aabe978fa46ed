import xml.etree.ElementTree as ET
from decimal import Decimal

import httpx
import pytest

from settlement.services.invoice_service import (
    InvoiceItem,
    InvoiceDocument,
    build_document_lines,
    build_receipt_line,
    calculate_invoice_totals,
)
from settlement.services.verifone_client import (
    ExternalServiceError,
    VerifoneClient,
    client_from_app,
    to_local_phone,
)


CUSTOMER_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <GetCustomersResponse xmlns="http://tempuri.org/">
      <GetCustomersResult>
        <RequestResult>
          <IsSuccess>true</IsSuccess>
          <Status>0</Status>
          <StatusDescription>OK</StatusDescription>
        </RequestResult>
        <Data>
          <Customers>
            <Customer>
              <CustomerNo>70321</CustomerNo>
              <IsClubMember>true</IsClubMember>
              <CreditPoints>125.5</CreditPoints>
            </Customer>
          </Customers>
        </Data>
      </GetCustomersResult>
    </GetCustomersResponse>
  </soap:Body>
</soap:Envelope>"""

EMPTY_CUSTOMERS_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <GetCustomersResponse xmlns="http://tempuri.org/">
      <GetCustomersResult>
        <RequestResult><IsSuccess>true</IsSuccess><Status>0</Status></RequestResult>
        <Data><Customers /></Data>
      </GetCustomersResult>
    </GetCustomersResponse>
  </soap:Body>
</soap:Envelope>"""

INVOICE_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <CreateInvoiceResponse xmlns="http://tempuri.org/">
      <CreateInvoiceResult>
        <RequestResult>
          <IsSuccess>true</IsSuccess>
          <Status>0</Status>
          <StatusDescription>Invoice created</StatusDescription>
        </RequestResult>
        <Data>
          <InvoiceNo>880011</InvoiceNo>
          <StoreNo>98</StoreNo>
          <CustomerNo>1</CustomerNo>
          <CreateDate>20261018</CreateDate>
          <CreateTime>101500</CreateTime>
        </Data>
      </CreateInvoiceResult>
    </CreateInvoiceResponse>
  </soap:Body>
</soap:Envelope>"""

REJECTED_RESPONSE = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <CreateInvoiceResponse xmlns="http://tempuri.org/">
      <CreateInvoiceResult>
        <RequestResult>
          <IsSuccess>false</IsSuccess>
          <Status>17</Status>
          <StatusDescription>Item not found</StatusDescription>
        </RequestResult>
      </CreateInvoiceResult>
    </CreateInvoiceResponse>
  </soap:Body>
</soap:Envelope>"""


def _client(handler, **overrides):
    options = {
        "endpoint": "https://verifone.test/Services.asmx",
        "chain_id": "1234",
        "username": "api-user",
        "password": "secret",
        "http_client": httpx.Client(transport=httpx.MockTransport(handler)),
    }
    options.update(overrides)
    return VerifoneClient(**options)


def _responder(body, status_code=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, text=body)
    return handler


def _document():
    items = [InvoiceItem(product_sku="4925-0301", quantity=1, price=Decimal("100"), color_name="black", size="38")]
    lines = build_document_lines(items, [], Decimal("10"), Decimal("0"))
    totals = calculate_invoice_totals(lines, items, Decimal("10"), Decimal("0"))
    return InvoiceDocument(
        lines=lines,
        totals=totals,
        receipt=build_receipt_line({"Brand": "Visa"}, totals.total_price_include_vat),
        customer_no=1,
        customer_name="Guest",
        create_date="20261018",
        order_number="ORD-1",
    )


class TestPhoneFormat:
    @pytest.mark.parametrize("phone, local", [
        ("+972501234567", "0501234567"),
        ("972-50-123-4567", "0501234567"),
        ("0501234567", "0501234567"),
        ("+97221234567", "021234567"),
        ("+15551234567", None),
        ("12345", None),
        ("", None),
        (None, None),
    ])
    def test_to_local_phone(self, phone, local):
        assert to_local_phone(phone) == local


class TestGetCustomers:
    def test_club_member_lookup(self, app):
        seen = []
        client = _client(_responder(CUSTOMER_RESPONSE, seen=seen))

        result = client.get_customer_by_cellular("+972501234567")

        assert result.success
        assert result.customer.is_club_member is True
        assert result.customer.credit_points == Decimal("125.50")
        assert result.customer.customer_no == "70321"

        request = seen[0]
        assert request.headers["SOAPAction"] == "http://tempuri.org/GetCustomers"
        assert request.headers["Content-Type"].startswith("text/xml")
        body = request.content.decode("utf-8")
        assert body.startswith('<?xml version="1.0" encoding="utf-8"?>')
        assert "<Cellular>0501234567</Cellular>" in body
        assert "<ChainID>1234</ChainID>" in body

    def test_no_customer(self, app):
        client = _client(_responder(EMPTY_CUSTOMERS_RESPONSE))
        result = client.get_customer_by_cellular("0501234567")
        assert result.success
        assert result.customer is None

    def test_phone_problems_are_failures_without_a_request(self, app):
        seen = []
        client = _client(_responder(CUSTOMER_RESPONSE, seen=seen))

        assert client.get_customer_by_cellular(None).description == "Missing phone number"
        assert client.get_customer_by_cellular("12345").description == "Invalid phone format"
        assert seen == []

    def test_missing_credentials_raise(self, app):
        client = _client(_responder(CUSTOMER_RESPONSE), password=None)
        with pytest.raises(ExternalServiceError):
            client.get_customer_by_cellular("0501234567")

    def test_http_error_raises(self, app):
        client = _client(_responder("boom", status_code=500))
        with pytest.raises(ExternalServiceError, match="HTTP 500"):
            client.get_customer_by_cellular("0501234567")

    def test_timeout_raises(self, app):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = _client(handler)
        with pytest.raises(ExternalServiceError, match="Timeout"):
            client.get_customer_by_cellular("0501234567")

    @pytest.mark.parametrize("body", [
        "not xml at all",
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body/></soap:Envelope>',
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/"><soap:Body>'
        '<GetCustomersResponse xmlns="http://tempuri.org/"/></soap:Body></soap:Envelope>',
    ])
    def test_malformed_responses_raise(self, app, body):
        client = _client(_responder(body))
        with pytest.raises(ExternalServiceError):
            client.get_customer_by_cellular("0501234567")


class TestCreateInvoice:
    def test_envelope_structure(self, app):
        client = _client(_responder(INVOICE_RESPONSE))
        envelope = client.build_create_invoice_envelope(_document())

        assert envelope.startswith('<?xml version="1.0" encoding="utf-8"?>')
        root = ET.fromstring(envelope.split("\n", 1)[1])
        tem = "{http://tempuri.org/}"
        invoice = root.find(f".//{tem}Invoice")

        assert invoice.find(f"{tem}StoreNo").text == "98"
        assert invoice.find(f"{tem}SupplyStoreNo").text == "13"
        assert invoice.find(f"{tem}TotalPriceIncludeVAT").text == "90.00"
        lines = invoice.findall(f"{tem}Lines/{tem}DocumentLines")
        assert [l.find(f"{tem}ItemID").text for l in lines] == ["777", "4925-03010138"]
        assert root.find(f".//{tem}User/{tem}Username").text == "api-user"

        card = root.find(f".//{tem}Receipt/{tem}receiptLines/{tem}ReceiptLines/{tem}creditCard")
        assert card.find(f"{tem}CreditCardType").text == "1"
        assert card.find(f"{tem}FirstPayment").text == "90.00"

    def test_success(self, app):
        seen = []
        client = _client(_responder(INVOICE_RESPONSE, seen=seen))
        result = client.create_invoice(client.build_create_invoice_envelope(_document()))

        assert result.success
        assert result.invoice_no == "880011"
        assert result.to_dict()["create_time"] == "101500"
        assert seen[0].headers["SOAPAction"] == "http://tempuri.org/CreateInvoice"

    def test_rejection_is_a_failure_value(self, app):
        client = _client(_responder(REJECTED_RESPONSE))
        result = client.create_invoice(client.build_create_invoice_envelope(_document()))

        assert not result.success
        assert result.status == 17
        assert result.to_dict() == {"success": False, "status": 17, "status_description": "Item not found"}


def test_client_from_app_reads_config(app):
    client = client_from_app()
    assert client.endpoint == "https://verifone.test/Services.asmx"
    assert client.has_credentials
    assert client.timeout == 2.0
