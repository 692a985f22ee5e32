# excel/io.py
from __future__ import annotations
from pathlib import Path
from typing import Iterable
import openpyxl

TITLE_ROW = 1
HEADER_ROW = 3
DATA_START_ROW = 4

COLUMNS = [
    ("Row", "row"),
    ("SPU", "spu"),
    ("Title", "title"),
    ("Price", "price"),
    ("Images", "images_count"),
    ("Variants", "variant_count"),
    ("Worker", "worker"),
    ("Status", "status"),
    ("Notes", "notes"),
]


def build_results_workbook(results: Iterable[dict], title: str = ""):
    """
    One row per processed item, in input order.
    Row 1 carries the title, row 3 the headers, data starts at row 4.
    """
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Products"
    if title:
        ws.cell(TITLE_ROW, 1).value = title

    for col, (header, _) in enumerate(COLUMNS, start=1):
        ws.cell(HEADER_ROW, col).value = header

    row = DATA_START_ROW
    for res in results:
        for col, (_, key) in enumerate(COLUMNS, start=1):
            value = res.get(key, "")
            ws.cell(row, col).value = "" if value is None else value
        row += 1
    return wb


def write_results_workbook(results: Iterable[dict], path: Path, title: str = "") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    build_results_workbook(results, title).save(path)
    return path
