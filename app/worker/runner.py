# worker/runner.py
"""
Worker pool for one bulk job.

The orchestrator spawns ``python -m worker.runner pool ...`` as its own
process group. The pool splits the input into contiguous chunks, starts one
``work`` process per chunk (stdout -> run-<stamp>-w<i>.log), waits for all of
them, writes the output folder, workbook and zip, and records the terminal
state on the job itself.
"""
from __future__ import annotations
import json
import logging
import shutil
import subprocess
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer

from excel.io import write_results_workbook
from orchestrator.errors import WorkerFailure
from orchestrator.logs import configure_logging
from orchestrator.models import JobSummary
from orchestrator.resolver import extract_items
from orchestrator.settings import Settings
from orchestrator.state import complete_if_running, fail_if_running, owns_run
from orchestrator.supervisor import worker_log_path
from storage.jobstore import JobStore, build_store
from worker.enrich import enrich_item

logger = logging.getLogger("worker.runner")

cli = typer.Typer(add_completion=False, help="Bulk job worker pool.")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def split_ranges(total: int, parts: int) -> List[Tuple[int, int]]:
    """Contiguous [start, stop) ranges whose sizes differ by at most one."""
    parts = max(1, min(parts, total))
    base, extra = divmod(total, parts)
    ranges: List[Tuple[int, int]] = []
    start = 0
    for i in range(parts):
        stop = start + base + (1 if i < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def load_items(input_path: Path) -> List[Any]:
    return extract_items(json.loads(Path(input_path).read_text(encoding="utf-8")))


def process_items(items: List[Any], offset: int, worker: str) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    total = len(items)
    for n, item in enumerate(items, start=1):
        res: Dict[str, Any] = {
            "row": offset + n,
            "worker": worker,
            "status": "ok",
            "notes": "",
            "checked_at": utc_now_iso(),
        }
        try:
            res.update(enrich_item(item))
        except Exception as e:
            res["status"] = "error"
            res["notes"] = f"ERROR: {type(e).__name__}: {e}"
        results.append(res)
        logger.info("[%s] %s/%s %s %s %s", worker, n, total, res.get("spu", "-"), res["status"], res["notes"])
    return results


def _await_running(store: JobStore, job_id: str, run_stamp: str, timeout: float) -> bool:
    # the orchestrator records the start right after spawning us
    deadline = time.monotonic() + timeout
    while True:
        job = store.get(job_id)
        if job is not None and owns_run(job, run_stamp=run_stamp):
            return True
        if job is None or job.status != "queued" or time.monotonic() >= deadline:
            return False
        time.sleep(0.2)


def _spawn_workers(
    input_path: Path, ranges: List[Tuple[int, int]], run_stamp: str, log_dir: Path, results_dir: Path
) -> List[Tuple[str, subprocess.Popen, Path]]:
    procs = []
    for i, (start, stop) in enumerate(ranges, start=1):
        worker = f"w{i}"
        out = results_dir / f"{worker}.jsonl"
        with open(worker_log_path(log_dir, run_stamp, i), "ab") as log_file:
            proc = subprocess.Popen(
                [
                    sys.executable, "-m", "worker.runner", "work",
                    "--input", str(input_path),
                    "--start", str(start),
                    "--stop", str(stop),
                    "--worker", worker,
                    "--out", str(out),
                ],
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
            )
        logger.info("Started %s for items %s-%s (pid %s)", worker, start + 1, stop, proc.pid)
        procs.append((worker, proc, out))
    return procs


def _read_results(path: Path) -> List[Dict[str, Any]]:
    with open(path, encoding="utf-8") as fh:
        return [json.loads(line) for line in fh if line.strip()]


def count_image_folders(folder: Path) -> Optional[int]:
    try:
        return sum(1 for p in folder.iterdir() if p.is_dir() and not p.name.startswith("_"))
    except OSError:
        return None


def write_outputs(
    results: List[Dict[str, Any]], output_dir: Path, item_count: int, run_stamp: str, zip_output: bool
) -> Dict[str, Optional[str]]:
    count_tag = f"{item_count}-spu"
    final_name = f"Drafted-Products-{count_tag}-{run_stamp}"
    temp = output_dir / f"Drafted-Products-currently_running-{count_tag}-{run_stamp}"
    final = output_dir / final_name
    temp.mkdir(parents=True, exist_ok=True)

    for res in results:
        if res.get("status") != "ok":
            continue
        product_dir = temp / res["spu"]
        product_dir.mkdir(exist_ok=True)
        (product_dir / "product.json").write_text(json.dumps(res, indent=2, ensure_ascii=False), encoding="utf-8")

    excel = write_results_workbook(
        results, temp / f"output-product_texts-{count_tag}-{run_stamp}.xlsx", title=final_name
    )
    temp.rename(final)
    excel = final / excel.name

    zip_path = None
    if zip_output:
        zip_path = shutil.make_archive(str(output_dir / final_name), "zip", root_dir=output_dir, base_dir=final_name)
    return {"output_folder": str(final), "output_excel_path": str(excel), "output_zip_path": zip_path}


def run_pool(
    store: JobStore,
    settings: Settings,
    *,
    job_id: str,
    input_path: Path,
    workers: int,
    run_stamp: str,
    log_dir: Path,
    await_timeout: float = 30.0,
) -> int:
    if not _await_running(store, job_id, run_stamp, await_timeout):
        logger.error("Job %s is not running run %s; exiting", job_id, run_stamp)
        return 1

    try:
        items = load_items(input_path)
        if not items:
            raise WorkerFailure("No items found in input.")
        ranges = split_ranges(len(items), workers)
        logger.info("Job %s: %s items across %s workers", job_id, len(items), len(ranges))

        results_dir = log_dir / f"run-{run_stamp}-results"
        results_dir.mkdir(parents=True, exist_ok=True)
        procs = _spawn_workers(input_path, ranges, run_stamp, log_dir, results_dir)

        failures = []
        for worker, proc, _ in procs:
            code = proc.wait()
            logger.info("%s exited with code %s", worker, code)
            if code != 0:
                failures.append(f"{worker} exited with code {code}")
        if failures:
            raise WorkerFailure("Worker failure: " + "; ".join(failures) + ".")

        results: List[Dict[str, Any]] = []
        for _, _, out in procs:
            results.extend(_read_results(out))
        results.sort(key=lambda r: r["row"])

        outputs = write_outputs(results, settings.output_dir, len(items), run_stamp, settings.zip_output)
        succeeded = sum(1 for r in results if r["status"] == "ok")
        summary = JobSummary(
            item_count=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            spu_count=len({r["spu"] for r in results if r.get("spu")}),
            image_folder_count=count_image_folders(Path(outputs["output_folder"])),
        )
        store.update(job_id, complete_if_running(summary, run_stamp=run_stamp, **outputs))
        logger.info("Job %s done: %s ok, %s failed", job_id, summary.succeeded, summary.failed)
        return 0

    except Exception as e:
        logger.exception("Job %s failed", job_id)
        message = str(e) if isinstance(e, WorkerFailure) else f"{type(e).__name__}: {e}"
        store.update(job_id, fail_if_running(message, run_stamp=run_stamp))
        return 1


@cli.command()
def pool(
    job_id: str = typer.Option(..., "--job-id"),
    input_path: Path = typer.Option(..., "--input"),
    workers: int = typer.Option(1, "--workers", min=1),
    run_stamp: str = typer.Option(..., "--run-stamp"),
    log_dir: Path = typer.Option(..., "--log-dir"),
) -> None:
    """Run every item of a job and record the outcome on the job."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    store = build_store(settings)
    code = run_pool(
        store,
        settings,
        job_id=job_id,
        input_path=input_path,
        workers=workers,
        run_stamp=run_stamp,
        log_dir=log_dir,
    )
    raise typer.Exit(code)


@cli.command()
def work(
    input_path: Path = typer.Option(..., "--input"),
    start: int = typer.Option(..., "--start", min=0),
    stop: int = typer.Option(..., "--stop", min=0),
    worker: str = typer.Option("w1", "--worker"),
    out: Path = typer.Option(..., "--out"),
) -> None:
    """Process items [start, stop) of the input into a JSONL results file."""
    configure_logging(Settings.from_env().log_level)
    items = load_items(input_path)[start:stop]
    results = process_items(items, start, worker)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w", encoding="utf-8") as fh:
        for res in results:
            fh.write(json.dumps(res, ensure_ascii=False) + "\n")


if __name__ == "__main__":
    cli()
