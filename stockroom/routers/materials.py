import io
from typing import Optional
from urllib.parse import quote
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.worksheet.table import Table, TableStyleInfo
from sqlalchemy import or_
from sqlmodel import Session, select

from stockroom.clock import Clock
from stockroom.config import get_settings
from stockroom.db import get_session
from stockroom.deps import get_clock
from stockroom.models import Material
from stockroom.schemas import (
    MaterialCreate,
    MaterialListResponse,
    MaterialRead,
    MaterialStockUpdate,
    StockStatus,
)
from stockroom.services import inventory
from stockroom.services.ledger import apply_stock_movement

router = APIRouter(prefix="/materials", tags=["materials"])


def _material_read(m: Material) -> MaterialRead:
    return MaterialRead(
        id=m.id,
        display_id=m.display_id,
        name=m.name,
        category_id=m.category_id,
        current_quantity=float(m.current_quantity),
        threshold_quantity=float(m.threshold_quantity),
        unit=m.unit,
        unit_price=float(m.unit_price) if m.unit_price is not None else None,
        location=m.location,
        supplier=m.supplier,
        stock_status=inventory.stock_status(m.current_quantity, m.threshold_quantity),
        updated_at=m.updated_at,
    )


@router.post("", response_model=MaterialRead, status_code=201)
def create_material(
        data: MaterialCreate,
        session: Session = Depends(get_session),
        clock: Clock = Depends(get_clock),
):
    return _material_read(inventory.create_material(session, data, clock.now()))


@router.get("", response_model=MaterialListResponse)
def list_materials(
        q: str | None = None,
        status: Optional[StockStatus] = Query(None, description="out / low / normal"),
        limit: int = Query(get_settings().default_page_limit, ge=1, le=200),
        offset: int = Query(0, ge=0),
        session: Session = Depends(get_session),
):
    items, total = inventory.list_materials(session, q=q, status=status, limit=limit, offset=offset)
    return {
        "items": [_material_read(m) for m in items],
        "total": total,
        "limit": limit,
        "offset": offset,
        "q": q,
    }


@router.get("/export.xlsx")
def export_materials_xlsx(
    q: str | None = None,
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
):
    stmt = select(Material).order_by(Material.id.asc())
    if q:
        stmt = stmt.where(or_(Material.name.contains(q), Material.location.contains(q)))
    materials = session.exec(stmt).all()

    header = ["ID", "Name", "Unit", "Current", "Threshold", "Status", "Location", "Updated"]

    wb = Workbook()
    ws = wb.active
    ws.title = "Material stock"

    header_font = Font(bold=True)
    header_fill = PatternFill("solid", fgColor="DDDDDD")
    header_align = Alignment(horizontal="center", vertical="center")

    ws.append(header)
    ws.row_dimensions[1].height = 26
    for col in range(1, len(header) + 1):
        cell = ws.cell(row=1, column=col)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = header_align

    for m in materials:
        ws.append([
            m.display_id or str(m.id),
            m.name,
            m.unit,
            float(m.current_quantity),
            float(m.threshold_quantity),
            inventory.stock_status(m.current_quantity, m.threshold_quantity).value,
            (m.location or "").strip(),
            m.updated_at,
        ])

    data_end_row = 1 + len(materials)

    # ✅ 冻结首行
    ws.freeze_panes = "A2"

    for r in range(2, data_end_row + 1):
        ws.cell(row=r, column=4).number_format = "0.###"
        ws.cell(row=r, column=5).number_format = "0.###"
        ws.cell(row=r, column=8).number_format = "yyyy-mm-dd hh:mm:ss"

    col_widths = {"A": 10, "B": 24, "C": 8, "D": 12, "E": 12, "F": 10, "G": 14, "H": 20}
    for k, w in col_widths.items():
        ws.column_dimensions[k].width = w

    # 没有数据时也至少覆盖表头，避免范围非法
    table = Table(displayName="MaterialStock", ref=f"A1:H{max(1, data_end_row)}")
    table.tableStyleInfo = TableStyleInfo(
        name="TableStyleMedium9",
        showFirstColumn=False,
        showLastColumn=False,
        showRowStripes=True,
        showColumnStripes=False,
    )
    ws.add_table(table)

    ws.append([])
    ws.append(["Exported at", clock.now().strftime("%Y-%m-%d %H:%M:%S")])

    buf = io.BytesIO()
    wb.save(buf)

    filename = f"material-stock-{clock.now():%Y%m%d}.xlsx"
    headers = {
        "Content-Disposition": f"attachment; filename=\"materials.xlsx\"; filename*=UTF-8''{quote(filename)}"
    }
    return Response(
        content=buf.getvalue(),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


@router.patch("/{material_id}/stock", response_model=MaterialRead)
def update_material_stock(
    material_id: int,
    body: MaterialStockUpdate,
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
):
    return _material_read(apply_stock_movement(session, material_id, body, clock.now()))


@router.get("/{material_id}", response_model=MaterialRead)
def get_material(material_id: int, session: Session = Depends(get_session)):
    return _material_read(inventory.get_material(session, material_id))
