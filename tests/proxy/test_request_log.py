import json

from llmproxy.proxy.logging_utils import JsonlLogger


def test_jsonl_logger_rotates(tmp_path, monkeypatch):
    log_file = tmp_path / "logs" / "requests.jsonl"
    logger = JsonlLogger(str(log_file), max_bytes=5)

    # Deterministic timestamp for rotation target
    monkeypatch.setattr(
        "llmproxy.proxy.logging_utils.time.strftime",
        lambda *_: "19700101-000000",
    )

    logger.log({"a": 1})
    assert log_file.exists()

    logger.log({"payload": "123456"})

    rotated = log_file.with_name(log_file.name + ".19700101-000000")
    assert rotated.exists(), "Rotated file missing"
    with open(log_file, encoding="utf-8") as fh:
        assert json.loads(fh.read().strip()) == {"payload": "123456"}


def test_jsonl_logger_handles_missing_directory(tmp_path):
    log_file = tmp_path / "missing" / "requests.jsonl"
    logger = JsonlLogger(str(log_file), max_bytes=100)
    logger.log({"event": "ok"})
    assert log_file.exists()


def test_jsonl_logger_swallows_unserializable_records(tmp_path):
    log_file = tmp_path / "requests.jsonl"
    logger = JsonlLogger(str(log_file))
    logger.log({"bad": object()})
    logger.log({"good": True})
    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1]) == {"good": True}
