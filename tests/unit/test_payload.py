"""
Unit tests for ERP document payloads and reference normalization.
"""

from datetime import date, datetime
from unittest.mock import patch

import pytest

from ecof.delivery import payload as payload_module
from ecof.delivery.models import ErpDocument
from ecof.delivery.payload import (
    build_document_payload,
    is_supported_document_type,
    normalize_erp_ref,
    normalize_item,
)


def _document(**overrides) -> ErpDocument:
    values = dict(
        id="doc-1",
        type="ReceiptGoods",
        number="PT-17",
        date=datetime(2025, 3, 14, 10, 30),
        version=2,
        organization_name="Romashka LLC",
        counterparty_name="Supplier LLC",
        counterparty_inn="7701234567",
        amount=500.0,
        data={},
    )
    values.update(overrides)
    return ErpDocument(**values)


class TestBuildDocumentPayload:
    def test_header_fields(self):
        payload = build_document_payload(_document(data={"totalAmount": "1200.50"}))

        assert payload["portalDocId"] == "doc-1"
        assert payload["portalVersion"] == 2
        assert payload["idempotencyKey"] == "doc-1-v2"
        assert payload["date"] == "2025-03-14"
        assert payload["sourceCompany"] == "Romashka LLC"
        assert payload["amount"] == 1200.5
        assert payload["totalAmount"] == 1200.5
        assert payload["currency"] == "RUB"
        assert payload["counterpartyName"] == "Supplier LLC"
        assert payload["counterpartyInn"] == "7701234567"

    def test_amount_falls_back_to_document(self):
        assert build_document_payload(_document())["totalAmount"] == 500.0

    def test_currency_from_document_then_data(self):
        assert build_document_payload(_document(currency="USD"))["currency"] == "USD"
        assert build_document_payload(_document(data={"currency": "EUR"}))["currency"] == "EUR"

    def test_date_variants(self):
        assert build_document_payload(_document(date=date(2025, 1, 2)))["date"] == "2025-01-02"
        assert build_document_payload(_document(date="2025-01-02T00:00:00Z"))["date"] == "2025-01-02"

    def test_references_and_optional_fields(self):
        payload = build_document_payload(
            _document(data={"contractId": "c-9", "dueDate": "2025-04-01", "vatIncluded": True, "unknownKey": 1}),
            warehouse={"name": "Main", "code": "WH01"},
            account={"name": "Settlement", "code": None},
        )

        assert payload["warehouseName"] == "Main"
        assert payload["warehouseCode"] == "WH01"
        assert payload["accountName"] == "Settlement"
        assert "accountCode" not in payload
        assert payload["contractId"] == "c-9"
        assert payload["vatIncluded"] is True
        assert "unknownKey" not in payload

    def test_items_for_types_with_items(self):
        payload = build_document_payload(
            _document(data={"goods": [{"nomenclatureName": "Cement", "quantity": "2", "price": 600, "vatPercent": 20}]})
        )

        assert payload["items"] == [
            {
                "nomenclatureName": "Cement",
                "quantity": 2.0,
                "unit": "шт",
                "price": 600.0,
                "totalAmount": 1200.0,
                "rowNumber": 1,
                "vatPercent": 20.0,
            }
        ]

    def test_empty_items_for_types_with_items(self):
        assert build_document_payload(_document())["items"] == []

    def test_no_items_for_types_without_items(self):
        payload = build_document_payload(_document(type="PaymentOrderOutgoing", data={"items": [{"price": 1}]}))
        assert "items" not in payload

    def test_unknown_type_is_sent_without_items(self):
        with patch.object(payload_module.logger, "warning") as warning:
            payload = build_document_payload(_document(type="MysteryDocument", data={"items": [{"price": 1}]}))

        assert "items" not in payload
        assert payload["type"] == "MysteryDocument"
        assert "Unknown document type" in warning.call_args[0][0]
        assert not is_supported_document_type("MysteryDocument")
        assert is_supported_document_type("AdvanceReport")

    def test_payload_is_deterministic(self):
        document = _document(data={"items": [{"serviceName": "Audit", "amount": 3}]})
        assert build_document_payload(document) == build_document_payload(document)


class TestNormalizeItem:
    def test_service_name_fallback(self):
        item = normalize_item({"service": "Consulting", "quantity": 1, "price": 100, "rowNumber": 7}, 0)

        assert item["nomenclatureName"] == "Consulting"
        assert item["serviceName"] == "Consulting"
        assert item["rowNumber"] == 7
        assert item["totalAmount"] == 100.0

    def test_amount_doubles_as_quantity_and_total(self):
        item = normalize_item({"amount": 4, "price": 10}, 2)

        assert item["quantity"] == 4.0
        assert item["totalAmount"] == 4.0
        assert item["amount"] == 4.0
        assert item["rowNumber"] == 3


class TestNormalizeErpRef:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("Document.ReceiptGoods,9061-0015-5d0c", "906100155d0c"),
            ("  ab-cd  ", "abcd"),
            ("a, b ,c-1", "c1"),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_erp_ref(raw) == expected
