import asyncio
import json
import time

from orchestrator.tailer import LogTailer, log_event, sse_event


def append(path, text):
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(text)


def test_missing_file_is_skipped_not_an_error(tmp_path):
    tailer = LogTailer(lambda: str(tmp_path / "nope.log"))
    assert tailer.poll() == []
    assert LogTailer(lambda: None).poll() == []


def test_lines_arrive_once_in_order_across_ticks(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log))
    assert tailer.poll() == []

    append(log, "one\ntwo\n")
    assert tailer.poll() == ["one", "two"]
    assert tailer.poll() == []

    append(log, "three\r\n\nfour\n")
    assert tailer.poll() == ["three", "four"]
    assert tailer.cursor == log.stat().st_size


def test_partial_line_waits_for_its_newline(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log))
    append(log, "done\nhalf")
    assert tailer.poll() == ["done"]
    append(log, "way there")
    assert tailer.poll() == []
    append(log, "\n")
    assert tailer.poll() == ["halfway there"]


def test_truncation_resets_cursor(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log))
    append(log, "first run line\nanother\n")
    assert len(tailer.poll()) == 2

    log.write_text("new\n")
    assert tailer.poll() == ["new"]


def test_path_switch_starts_new_file_from_zero(tmp_path):
    first, second = tmp_path / "a.log", tmp_path / "b.log"
    current = {"path": str(first)}
    tailer = LogTailer(lambda: current["path"])
    append(first, "a1\na2\na3\n")
    assert tailer.poll() == ["a1", "a2", "a3"]

    append(second, "b1 is a longer line than before\n")
    current["path"] = str(second)
    assert tailer.poll() == ["b1 is a longer line than before"]


def test_oversized_line_without_newline_is_flushed(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log), max_read_bytes=8)
    append(log, "x" * 20)
    assert tailer.poll() == ["x" * 8]
    assert tailer.cursor == 8


def test_replay_subscriber_gets_existing_content(tmp_path):
    log = tmp_path / "run.log"
    append(log, "old\n")
    tailer = LogTailer(lambda: str(log), replay=True)
    tailer.establish_start()
    append(log, "new\n")
    assert tailer.poll() == ["old", "new"]


def test_tail_subscriber_starts_at_current_end(tmp_path):
    log = tmp_path / "run.log"
    append(log, "old\n")
    tailer = LogTailer(lambda: str(log), replay=False)
    tailer.establish_start()
    append(log, "new\n")
    assert tailer.poll() == ["new"]


def test_tail_subscriber_before_file_exists_reads_from_zero(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log), replay=False)
    tailer.establish_start()
    append(log, "first\n")
    assert tailer.poll() == ["first"]


def test_subscribers_have_independent_cursors(tmp_path):
    log = tmp_path / "run.log"
    a = LogTailer(lambda: str(log))
    b = LogTailer(lambda: str(log))
    append(log, "1\n2\n")
    assert a.poll() == ["1", "2"]
    append(log, "3\n")
    assert b.poll() == ["1", "2", "3"]
    assert a.poll() == ["3"]


def test_async_stream_runs_until_cancelled(tmp_path):
    log = tmp_path / "run.log"
    append(log, "a\n")
    tailer = LogTailer(lambda: str(log), interval=0.01)

    async def consume():
        got = []
        stream = tailer.lines()
        async for line in stream:
            got.append(line)
            if line == "a":
                append(log, "b\n")
            if len(got) == 2:
                break
        await stream.aclose()
        return got

    assert asyncio.run(consume()) == ["a", "b"]


def test_cancelling_the_consumer_stops_the_loop(tmp_path):
    log = tmp_path / "run.log"
    tailer = LogTailer(lambda: str(log), interval=0.01)
    ticks = []
    original = tailer.poll

    def counting_poll():
        ticks.append(1)
        return original()

    tailer.poll = counting_poll

    async def run():
        async def drain():
            async for _ in tailer.lines():
                pass

        task = asyncio.ensure_future(drain())
        await asyncio.sleep(0.1)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        seen = len(ticks)
        await asyncio.sleep(0.1)
        return seen, len(ticks)

    seen, later = asyncio.run(run())
    assert seen > 0
    # at most the tick already handed to a worker thread
    assert later <= seen + 1


def test_slow_path_lookup_does_not_block_the_event_loop(tmp_path):
    log = tmp_path / "run.log"
    append(log, "line\n")

    def slow_resolve():
        time.sleep(0.3)
        return str(log)

    tailer = LogTailer(slow_resolve, interval=0.01)

    async def run():
        gaps = []
        stop = asyncio.Event()

        async def heartbeat():
            last = time.monotonic()
            while not stop.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        beat = asyncio.ensure_future(heartbeat())
        stream = tailer.lines()
        first = await stream.__anext__()
        await stream.aclose()
        stop.set()
        await beat
        return first, max(gaps)

    first, worst_gap = asyncio.run(run())
    assert first == "line"
    assert worst_gap < 0.2


def test_sse_event_format():
    frame = sse_event(log_event("hello", "w1"))
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "log", "worker": "w1", "line": "hello"}
