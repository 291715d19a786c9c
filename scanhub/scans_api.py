"""
scans_api.py
------------
FastAPI router for stored scans.

Saved scans (user-confirmed, deduplicated per barcode within a window):
  POST   /api/save-scan
  GET    /api/saved-scans
  DELETE /api/saved-scans
  DELETE /api/saved-scans/{id}

Scan history (every accepted device scan, plus manual inserts):
  POST   /api/barcodes/save
  GET    /api/barcodes/scanned?limit&offset&source
  DELETE /api/barcodes/{id}
  GET    /api/barcodes/lookup/{barcode}
  GET    /api/barcodes/stats

A duplicate save is not an HTTP error: it returns 200 with
success=false, duplicate=true and the previous saved_at so the UI can
explain why nothing was stored.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ConfigDict

router = APIRouter(tags=["scans"])


class SaveScanIn(BaseModel):
    barcode_data: Optional[str] = None
    barcode_type: Optional[str] = None
    source: Optional[str] = None
    product_name: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    description: Optional[str] = None
    metadata: Optional[Any] = None


class BarcodeSaveIn(BaseModel):
    """Direct history insert; field names follow the device scan record."""
    model_config = ConfigDict(extra="allow")

    barcodeData: Optional[str] = None
    scanType: str = "qr"
    source: str = "esp32"
    productName: str = "Unknown Product"
    productId: Optional[str] = None
    price: float = 0
    locationX: float = 0
    locationY: float = 0
    locationZ: float = 0
    category: str = "Unknown"
    metadata: Optional[Any] = None


# ---------------------------------------------------------------------------
# Saved scans
# ---------------------------------------------------------------------------

@router.post("/api/save-scan")
async def save_scan(req: SaveScanIn, request: Request):
    svc = request.app.state.services
    if not req.barcode_data:
        raise HTTPException(status_code=400, detail="Barcode data is required")
    if (req.source or "").upper() not in svc.allowed_sources:
        raise HTTPException(status_code=400, detail="Only ESP32 source scans can be saved.")

    res = await svc.saved_scans.save(
        barcode_data=req.barcode_data,
        barcode_type=req.barcode_type,
        source=req.source,
        product_name=req.product_name,
        category=req.category,
        price=req.price,
        description=req.description,
        metadata=req.metadata,
    )
    if res.duplicate:
        return {
            "success": False,
            "error": (
                f"This barcode was already saved {res.minutes_ago:.1f} minutes ago. "
                "Please wait before saving again."
            ),
            "duplicate": True,
            "lastSaved": res.last_saved,
        }
    return {"success": True, "message": "Scan saved successfully", "savedId": res.saved_id}


@router.get("/api/saved-scans")
async def list_saved_scans(request: Request):
    rows = await request.app.state.services.saved_scans.list_saved()
    # dashboard tables read created_at / scanned_at
    for row in rows:
        row["created_at"] = row["saved_at"]
        row["scanned_at"] = row["saved_at"]
    return {"success": True, "savedScans": rows}


@router.delete("/api/saved-scans")
async def clear_saved_scans(request: Request):
    n = await request.app.state.services.saved_scans.clear()
    return {"success": True, "message": "All saved scans cleared successfully", "deletedCount": n}


@router.delete("/api/saved-scans/{saved_id}")
async def delete_saved_scan(saved_id: int, request: Request):
    if not await request.app.state.services.saved_scans.delete(saved_id):
        raise HTTPException(status_code=404, detail="Saved scan not found")
    return {"success": True, "message": "Saved scan deleted successfully", "deletedId": saved_id}


# ---------------------------------------------------------------------------
# Scan history
# ---------------------------------------------------------------------------

@router.post("/api/barcodes/save")
async def save_barcode(req: BarcodeSaveIn, request: Request):
    if not req.barcodeData:
        raise HTTPException(status_code=400, detail="barcodeData is required")
    data = await request.app.state.services.scans.insert_scan(
        barcode_data=req.barcodeData,
        barcode_type=req.scanType,
        source=req.source,
        product_name=req.productName,
        product_id=req.productId or "UNKNOWN",
        price=req.price,
        location=(req.locationX, req.locationY, req.locationZ),
        category=req.category,
        metadata=req.metadata,
    )
    return {"success": True, "message": "Barcode scan saved successfully", "data": data}


@router.get("/api/barcodes/scanned")
async def list_scanned(request: Request, limit: int = 100, offset: int = 0,
                       source: Optional[str] = None):
    rows = await request.app.state.services.scans.list_scans(limit=limit, offset=offset, source=source)
    return {"success": True, "barcodes": rows, "total": len(rows), "limit": limit, "offset": offset}


@router.get("/api/barcodes/stats")
async def barcode_stats(request: Request):
    return {"success": True, "stats": await request.app.state.services.scans.stats()}


@router.get("/api/barcodes/lookup/{barcode}")
async def lookup_barcode(barcode: str, request: Request):
    row = await request.app.state.services.scans.lookup(barcode)
    if row is None:
        return {"success": False, "message": "Barcode not found in database", "product": None}

    meta: Dict[str, Any] = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
    price = row.get("price")
    return {
        "success": True,
        "product": {
            "barcode": row["barcode_data"],
            "name": row.get("product_name") or "Unknown Product",
            "type": row.get("category") or "Unknown",
            "details": meta.get("productDetails") or meta.get("description") or "No details available",
            "price": f"${price}" if price else "Price not available",
            "category": row.get("category") or "Unknown",
            "location": f"X:{row['location_x']}, Y:{row['location_y']}, Z:{row['location_z']}",
            "foundInDatabase": True,
            "lastScanned": row["created_at"],
        },
    }


@router.delete("/api/barcodes/{scan_id}")
async def delete_barcode(scan_id: int, request: Request):
    if not await request.app.state.services.scans.delete_scan(scan_id):
        raise HTTPException(status_code=404, detail="Barcode not found")
    return {"success": True, "message": "Barcode deleted successfully"}
