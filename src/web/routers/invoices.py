"""Invoices router - invoice records, line items, totals and editor sessions."""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from src.invoicing.categories import is_auto_generated_category, partition_line_items
from src.invoicing.templates import DEFAULT_PRICE_PER_PERSON_CENTS, get_common_templates
from src.shared.errors import AppErrors, StorageError, format_storage_error
from src.web.dependencies import (
    drop_editor,
    get_editor,
    get_invoice_repository,
    get_mutations,
    get_reconciler,
)

log = logging.getLogger(__name__)
router = APIRouter()

_LINE_ITEM_FIELDS = ("title", "description", "category", "quantity", "unit_price_cents", "total_price_cents", "sort_order")


def _invoice_to_dict(inv):
    return asdict(inv)


def _line_item_to_dict(item):
    d = asdict(item)
    d["auto_generated"] = is_auto_generated_category(item.category)
    return d


def _editor_to_dict(invoice_id, editor):
    return {
        "invoice_id": invoice_id,
        "line_items": [_line_item_to_dict(i) for i in editor.local_line_items],
        "customer_notes": editor.customer_notes,
        "admin_notes": editor.admin_notes,
        "has_unsaved_changes": editor.has_unsaved_changes,
        "dirty_item_ids": sorted(editor.dirty_item_ids),
        "is_saving": editor.is_saving,
        "last_error": editor.last_error,
    }


def _not_found():
    return JSONResponse({"error": AppErrors.INVOICE_NOT_FOUND}, status_code=404)


def _storage_failed(e: StorageError):
    return JSONResponse({"error": format_storage_error(e)}, status_code=502)


# ── Invoices API ──

@router.get("/api/invoices")
async def list_invoices(
    status: str | None = Query(default=None),
    limit: int | None = Query(default=None),
    offset: int = Query(default=0),
):
    repo = get_invoice_repository()
    invoices = repo.list_invoices(status=status, limit=limit, offset=offset)
    return {"invoices": [_invoice_to_dict(i) for i in invoices], "count": len(invoices)}


@router.post("/api/invoices")
async def create_invoice(request: Request):
    body = await request.json()
    invoice_number = (body.get("invoice_number") or "").strip()
    if not invoice_number:
        return JSONResponse({"error": "invoice_number is required."}, status_code=400)
    repo = get_invoice_repository()
    try:
        inv = repo.create_invoice(
            invoice_number=invoice_number,
            customer_name=body.get("customer_name", ""),
            tax_rate=body.get("tax_rate"),
            is_government_contract=body.get("is_government_contract", False),
            discount_cents=body.get("discount_cents", 0),
            notes=body.get("notes"),
            admin_notes=body.get("admin_notes"),
            quote_request_id=body.get("quote_request_id"),
            items=body.get("items"),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return _invoice_to_dict(inv)


@router.get("/api/invoices/{invoice_id}")
async def get_invoice(invoice_id: str):
    repo = get_invoice_repository()
    inv = repo.get_invoice(invoice_id)
    if not inv:
        return _not_found()
    return _invoice_to_dict(inv)


@router.put("/api/invoices/{invoice_id}")
async def update_invoice(invoice_id: str, request: Request):
    """Update invoice attributes; tax, exemption and discount changes are reconciled."""
    body = await request.json()
    repo = get_invoice_repository()
    if not repo.get_invoice(invoice_id):
        return _not_found()
    repo.update_invoice(invoice_id, **body)
    if {"tax_rate", "is_government_contract", "discount_cents"} & body.keys():
        await get_reconciler().reconcile(invoice_id)
    return _invoice_to_dict(repo.get_invoice(invoice_id))


@router.delete("/api/invoices/{invoice_id}")
async def delete_invoice(invoice_id: str):
    repo = get_invoice_repository()
    if not repo.delete_invoice(invoice_id):
        return _not_found()
    drop_editor(invoice_id)
    get_reconciler().invalidate_dependents(invoice_id)
    return {"status": "ok"}


@router.post("/api/invoices/{invoice_id}/recalculate")
async def recalculate_invoice(invoice_id: str):
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    result = await get_mutations().recalculate(invoice_id)
    if result.warning:
        return JSONResponse({"error": str(result.warning)}, status_code=502)
    return asdict(result.totals)


@router.put("/api/invoices/{invoice_id}/notes")
async def update_notes(invoice_id: str, request: Request):
    body = await request.json()
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    try:
        inv = await get_mutations().update_invoice_notes(
            invoice_id,
            customer_notes=body.get("customer_notes"),
            admin_notes=body.get("admin_notes"),
        )
    except StorageError as e:
        return _storage_failed(e)
    return _invoice_to_dict(inv)


# ── Line Items API ──

@router.get("/api/invoices/{invoice_id}/line-items")
async def list_line_items(invoice_id: str):
    repo = get_invoice_repository()
    if not repo.get_invoice(invoice_id):
        return _not_found()
    items = repo.get_line_items(invoice_id)
    auto_generated, custom = partition_line_items(items)
    return {
        "line_items": [_line_item_to_dict(i) for i in items],
        "auto_generated_ids": [i.id for i in auto_generated],
        "custom_ids": [i.id for i in custom],
    }


@router.post("/api/invoices/{invoice_id}/line-items")
async def create_line_items(invoice_id: str, request: Request):
    body = await request.json()
    items = body.get("items", [])
    if not items:
        return JSONResponse({"error": "items is required."}, status_code=400)
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    try:
        created = await get_mutations().create_line_items(invoice_id, items)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        return _storage_failed(e)
    return [_line_item_to_dict(i) for i in created]


@router.put("/api/invoices/{invoice_id}/line-items")
async def replace_line_items(invoice_id: str, request: Request):
    body = await request.json()
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    try:
        items = await get_mutations().replace_line_items(invoice_id, body.get("items", []))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        return _storage_failed(e)
    return [_line_item_to_dict(i) for i in items]


# ── Line item templates ──

@router.get("/api/line-item-templates")
async def list_line_item_templates():
    return {"templates": get_common_templates()}


@router.post("/api/invoices/{invoice_id}/line-items/templates/{template_id}")
async def add_template_item(invoice_id: str, template_id: str, request: Request):
    body = await request.json() if await request.body() else {}
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    try:
        item = await get_mutations().add_template_item(invoice_id, template_id, body.get("guest_count"))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        return _storage_failed(e)
    return _line_item_to_dict(item)


@router.post("/api/invoices/{invoice_id}/line-items/per-person")
async def quick_calculate_per_person(invoice_id: str, request: Request):
    """Replace all line items with per-person catering plus the service fee."""
    body = await request.json()
    if body.get("guest_count") is None:
        return JSONResponse({"error": "guest_count is required."}, status_code=400)
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    try:
        items = await get_mutations().quick_calculate_per_person(
            invoice_id,
            body["guest_count"],
            body.get("price_per_person_cents", DEFAULT_PRICE_PER_PERSON_CENTS),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        return _storage_failed(e)
    return [_line_item_to_dict(i) for i in items]


@router.patch("/api/invoices/{invoice_id}/line-items/{item_id}")
async def update_line_item(invoice_id: str, item_id: str, request: Request):
    body = await request.json()
    changes = {k: v for k, v in body.items() if k in _LINE_ITEM_FIELDS}
    if not changes:
        return JSONResponse({"error": "No editable fields given."}, status_code=400)
    repo = get_invoice_repository()
    item = repo.get_line_item(item_id)
    if not item or item.invoice_id != invoice_id:
        return JSONResponse({"error": AppErrors.LINE_ITEM_NOT_FOUND}, status_code=404)
    # Price rules depend on the stored category
    changes.setdefault("category", item.category)
    try:
        updated = await get_mutations().update_line_item(invoice_id, item_id, changes)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    except StorageError as e:
        return _storage_failed(e)
    return _line_item_to_dict(updated)


@router.delete("/api/invoices/{invoice_id}/line-items/{item_id}")
async def delete_line_item(invoice_id: str, item_id: str):
    repo = get_invoice_repository()
    item = repo.get_line_item(item_id)
    if not item or item.invoice_id != invoice_id:
        return JSONResponse({"error": AppErrors.LINE_ITEM_NOT_FOUND}, status_code=404)
    try:
        await get_mutations().delete_line_item(invoice_id, item_id)
    except StorageError as e:
        return _storage_failed(e)
    return {"status": "ok"}


# ── Editor sessions ──

async def _loaded_editor(invoice_id: str):
    """Return the session for invoice_id, loading it from the store on first use."""
    editor = get_editor(invoice_id)
    if editor.invoice_id != invoice_id:
        await editor.load(invoice_id)
    return editor


@router.get("/api/invoices/{invoice_id}/editor")
async def get_editor_state(invoice_id: str):
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    editor = get_editor(invoice_id)
    try:
        await editor.load(invoice_id)
    except StorageError as e:
        return _storage_failed(e)
    return _editor_to_dict(invoice_id, editor)


@router.patch("/api/invoices/{invoice_id}/editor/items/{item_id}")
async def edit_editor_item(invoice_id: str, item_id: str, request: Request):
    body = await request.json()
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    editor = await _loaded_editor(invoice_id)
    try:
        item = editor.update_line_item(item_id, **body)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if item is None:
        return JSONResponse({"error": AppErrors.LINE_ITEM_NOT_FOUND}, status_code=404)
    return _editor_to_dict(invoice_id, editor)


@router.put("/api/invoices/{invoice_id}/editor/notes")
async def edit_editor_notes(invoice_id: str, request: Request):
    body = await request.json()
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    editor = await _loaded_editor(invoice_id)
    if "customer_notes" in body:
        editor.set_customer_notes(body["customer_notes"] or "")
    if "admin_notes" in body:
        editor.set_admin_notes(body["admin_notes"] or "")
    return _editor_to_dict(invoice_id, editor)


@router.post("/api/invoices/{invoice_id}/editor/save")
async def save_editor(invoice_id: str):
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    editor = await _loaded_editor(invoice_id)
    if editor.is_saving:
        return JSONResponse({"error": "Save already in progress."}, status_code=409)
    invalid = bool(editor.buffer.validation_errors())
    saved = await editor.save_all_changes()
    state = _editor_to_dict(invoice_id, editor)
    state["saved"] = saved
    if saved:
        return state
    return JSONResponse(state, status_code=400 if invalid else 502)


@router.post("/api/invoices/{invoice_id}/editor/discard")
async def discard_editor(invoice_id: str):
    if not get_invoice_repository().get_invoice(invoice_id):
        return _not_found()
    editor = await _loaded_editor(invoice_id)
    editor.discard_all_changes()
    return _editor_to_dict(invoice_id, editor)
