import os
import logging
from typing import Dict, List
from fastapi import FastAPI, HTTPException, UploadFile, File
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from pacurhoja import config
from pacurhoja.formula import canonical
from pacurhoja.models import CellDetail, CellResult, EvaluateRequest, Sheet, SheetCreate, SheetUpdateCell, SheetUpdateFormat, SheetUpdateTitle
from pacurhoja.storage import APH_FILENAME, DatabaseManager, SheetRepository, SheetStore

logger = logging.getLogger(__name__)

app = FastAPI(title="PacurHoja")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

db = DatabaseManager(config.get_db_path())
db.initialize_schema()

sheet_repo = SheetRepository(db)


def _require_store(sheet_id: str) -> SheetStore:
    store = sheet_repo.get_store(sheet_id)
    if store is None:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return store


@app.get("/health")
async def health():
    return {"status": "ok", "max_rows": config.MAX_ROWS, "max_cols": config.MAX_COLS}


# ── Sheets ────────────────────────────────────────────────────────

@app.post("/sheets", response_model=Sheet)
async def create_sheet(req: SheetCreate):
    try:
        return sheet_repo.create(title=req.title, cells=req.cells, formats=req.formats)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

@app.get("/sheets", response_model=List[Sheet])
async def list_sheets():
    return sheet_repo.get_all()

@app.get("/sheets/{sheet_id}", response_model=Sheet)
async def get_sheet(sheet_id: str):
    sheet = sheet_repo.get_by_id(sheet_id)
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet

@app.delete("/sheets/{sheet_id}")
async def delete_sheet(sheet_id: str):
    _require_store(sheet_id)
    sheet_repo.delete(sheet_id)
    return {"status": "deleted"}

@app.put("/sheets/{sheet_id}/title", response_model=Sheet)
async def update_sheet_title(sheet_id: str, req: SheetUpdateTitle):
    title = req.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    _require_store(sheet_id)
    return sheet_repo.update_title(sheet_id, title)

@app.put("/sheets/{sheet_id}/cell", response_model=Sheet)
async def update_sheet_cell(sheet_id: str, req: SheetUpdateCell):
    try:
        sheet = sheet_repo.update_cell(sheet_id, req.address, req.value)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet

@app.put("/sheets/{sheet_id}/format", response_model=Sheet)
async def update_sheet_format(sheet_id: str, req: SheetUpdateFormat):
    try:
        sheet = sheet_repo.update_format(sheet_id, req.address, req.format)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if not sheet:
        raise HTTPException(status_code=404, detail="Sheet not found")
    return sheet

@app.get("/sheets/{sheet_id}/cells/{address}", response_model=CellDetail)
async def get_sheet_cell(sheet_id: str, address: str):
    """Raw content, display result and dependents of a single cell."""
    store = _require_store(sheet_id)
    try:
        result = store.evaluate(address)
        dependents = store.dependents(address)
        address = canonical(address.strip().upper())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return CellDetail(
        address=address,
        raw=store.get_raw(address),
        format=store.get_format(address),
        result=result,
        dependents=dependents,
    )


# ── Ad-hoc evaluation ─────────────────────────────────────────────

@app.post("/evaluate", response_model=Dict[str, CellResult])
async def evaluate_cells(req: EvaluateRequest):
    """Evaluate a cells map without storing it."""
    try:
        store = SheetStore(cells=req.cells, formats=req.formats)
        if req.addresses:
            return {canonical(a.strip().upper()): store.evaluate(a) for a in req.addresses}
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return store.values()


# ── .aph files ────────────────────────────────────────────────────

@app.get("/sheets/{sheet_id}/export")
async def export_sheet(sheet_id: str):
    store = _require_store(sheet_id)
    return Response(
        content=store.to_aph(),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{APH_FILENAME}"'},
    )

@app.post("/sheets/import", response_model=Sheet)
async def import_sheet(file: UploadFile = File(...)):
    """Create a sheet from an uploaded .aph file."""
    content = await file.read()
    try:
        store = SheetStore.from_aph(content.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid .aph file: {e}")
    title = os.path.splitext(file.filename or "")[0] or "Imported Sheet"
    logger.info("Importing %s (%d cells)", file.filename, len(store))
    return sheet_repo.create(title=title, cells=store.cells)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    print(f"[STARTUP] Database: {db.db_path}")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
