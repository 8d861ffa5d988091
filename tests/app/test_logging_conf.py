from __future__ import annotations

from catalog_mirror.logging_conf import available_job_logs, job_logger, log_path, redact_secrets, tail_log


def test_secrets_are_masked() -> None:
    event = redact_secrets(None, "info", {"event": "token", "client_secret": "abc", "cookie": "", "set_id": 1})
    assert event == {"event": "token", "client_secret": "***", "cookie": "", "set_id": 1}


def test_job_logger_creates_its_log_file(isolated_home) -> None:
    logger = job_logger("full-scan")
    logger.info("job_started")
    assert log_path("full-scan") == (isolated_home / "logs" / "jobs" / "full-scan.log").resolve()
    assert log_path("full-scan") in list(available_job_logs())


def test_tail_log(tmp_path) -> None:
    path = tmp_path / "some.log"
    assert tail_log(path) == []
    path.write_text("a\nb\nc\n", encoding="utf-8")
    assert tail_log(path, 2) == ["b\n", "c\n"]
