import io
import json
import subprocess
import sys
import time

import openpyxl

from excel.io import COLUMNS, DATA_START_ROW, HEADER_ROW


def make_items(n):
    return [
        {"spu": f"ND-{1000 + i}", "title": f"Product  {i}", "price": "¥ 12,50", "images": ["a.jpg"]}
        for i in range(n)
    ]


def payload_bytes(n):
    return json.dumps(make_items(n)).encode("utf-8")


def dead_pid():
    """A pid that belonged to a process which has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def wait_for(predicate, timeout=30.0, interval=0.1):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    return predicate()


def read_result_rows(source):
    """Data rows of a results workbook, given its path or its bytes."""
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    ws = openpyxl.load_workbook(source).active
    headers = [ws.cell(HEADER_ROW, col).value for col in range(1, len(COLUMNS) + 1)]
    assert headers == [h for h, _ in COLUMNS]

    rows = []
    for r in range(DATA_START_ROW, ws.max_row + 1):
        rec = {key: ws.cell(r, col).value for col, (_, key) in enumerate(COLUMNS, start=1)}
        if rec["row"] not in (None, ""):
            rows.append(rec)
    return rows
