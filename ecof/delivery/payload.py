"""
ERP document payload construction.

Builds the JSON body the ERP expects for a document upsert from the
portal document row and its current version data. Pure functions: the
caller resolves warehouse/account references beforehand.
"""

import logging
from datetime import date, datetime
from typing import Any

from .models import ErpDocument
from .signing import document_idempotency_key

logger = logging.getLogger("ecof.delivery.payload")

DEFAULT_CURRENCY = "RUB"
DEFAULT_UNIT = "шт"

# Portal document types the ERP accepts, with whether they carry line items
DOCUMENT_TYPES: dict[str, bool] = {
    "ReceiptGoods": True,
    "ReceiptServices": True,
    "ReceiptRights": True,
    "ReceiptGoodsServicesCommission": True,
    "ReceiptAdditionalExpenses": True,
    "ReceiptTickets": True,
    "ReturnToSupplier": True,
    "ReceiptAdjustment": True,
    "DiscrepancyAct": True,
    "InvoiceFromSupplier": False,
    "ReceivedInvoice": True,
    "SaleGoods": True,
    "SaleServices": True,
    "SaleRights": True,
    "ReturnFromBuyer": True,
    "SaleAdjustment": True,
    "InvoiceToBuyer": False,
    "IssuedInvoice": True,
    "BankStatement": False,
    "PaymentOrderOutgoing": False,
    "PaymentOrderIncoming": False,
    "CashReceiptOrder": False,
    "CashExpenseOrder": False,
    "GoodsTransfer": True,
    "GoodsWriteOff": True,
    "GoodsReceipt": True,
    "Inventory": True,
    "TransferToConsignor": True,
    "ConsignorReport": True,
    "PowerOfAttorney": False,
    "AdvanceReport": True,
}

OPTIONAL_TOP_LEVEL = (
    "contractId",
    "dueDate",
    "vatOnTop",
    "vatIncluded",
    "purpose",
    "servicePeriod",
    "serviceStartDate",
    "serviceEndDate",
    "warehouseIdFrom",
    "warehouseNameFrom",
    "warehouseIdTo",
    "warehouseNameTo",
)


def is_supported_document_type(document_type: str) -> bool:
    return document_type in DOCUMENT_TYPES


def normalize_erp_ref(ref: str | None) -> str:
    """
    Reduce an ERP document reference to the bare id the API accepts.

    "Document.ReceiptGoods,9061-0015" -> "90610015"
    """
    if not ref or not isinstance(ref, str):
        return ""
    value = ref.strip()
    if not value:
        return ""
    if "," in value:
        value = value.rsplit(",", 1)[1].strip()
    return value.replace("-", "")


def _number(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _date_str(value: datetime | date | str) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()[:10]
    return str(value)[:10]


def normalize_item(row: dict[str, Any], index: int) -> dict[str, Any]:
    """Map one line-item row onto the ERP's table format."""
    service_name = row.get("serviceName") or row.get("service")
    quantity = _number(row.get("quantity", row.get("amount")))
    price = _number(row.get("price"))

    item: dict[str, Any] = {
        "nomenclatureName": row.get("nomenclatureName") or service_name or None,
        "quantity": quantity,
        "unit": row.get("unit") or DEFAULT_UNIT,
        "price": price,
        "totalAmount": _number(row.get("totalAmount", row.get("amount")), price * quantity),
        "rowNumber": int(row["rowNumber"]) if row.get("rowNumber") is not None else index + 1,
    }
    if service_name:
        item["serviceName"] = service_name
    for key in ("amount", "vatPercent", "vatAmount"):
        if row.get(key) is not None:
            item[key] = _number(row[key])
    return item


def build_document_payload(
    document: ErpDocument,
    warehouse: dict[str, Any] | None = None,
    account: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build the ERP upsert payload for the document's current version.

    Args:
        document: Document row with `data` holding the current version data
        warehouse: Resolved warehouse reference ({"name", "code"}), if any
        account: Resolved bank account reference ({"name", "code"}), if any

    Returns:
        JSON-ready payload; deterministic for an unchanged document version
    """
    data = document.data or {}
    has_items = DOCUMENT_TYPES.get(document.type)
    if has_items is None:
        logger.warning(f"Unknown document type {document.type} for {document.id}, sending without items")

    total_amount = _number(data.get("totalAmount", data.get("amount", document.amount)))
    version = document.version or 1

    payload: dict[str, Any] = {
        "portalDocId": document.id,
        "portalVersion": version,
        "idempotencyKey": document_idempotency_key(document.id, version),
        "type": document.type,
        "number": document.number,
        "date": _date_str(document.date),
        "sourceCompany": document.organization_name or "",
        "amount": total_amount,
        "totalAmount": total_amount,
        "currency": document.currency or data.get("currency") or DEFAULT_CURRENCY,
    }

    if document.counterparty_name:
        payload["counterpartyName"] = document.counterparty_name
    if document.counterparty_inn:
        payload["counterpartyInn"] = document.counterparty_inn
    for prefix, ref in (("warehouse", warehouse), ("account", account)):
        if not ref:
            continue
        if ref.get("name"):
            payload[f"{prefix}Name"] = ref["name"]
        if ref.get("code"):
            payload[f"{prefix}Code"] = ref["code"]

    for key in OPTIONAL_TOP_LEVEL:
        if data.get(key) is not None and key not in payload:
            payload[key] = data[key]

    if has_items:
        rows = data.get("items") or data.get("goods") or []
        if not isinstance(rows, list):
            rows = []
        payload["items"] = [normalize_item(row, idx) for idx, row in enumerate(rows) if isinstance(row, dict)]

    return payload
