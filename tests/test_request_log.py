from biliaudio.services.request_log import RequestLog, RequestLogEntry


def entry(**overrides):
    values = {
        "client_ip": "127.0.0.1",
        "user_agent": "pytest",
        "bvid": "BV1xx411c7mD",
        "quality": 0,
        "status_code": 200,
    }
    values.update(overrides)
    return RequestLogEntry(**values)


def test_record_and_count(tmp_path):
    log = RequestLog(db_path=str(tmp_path / "requests.db"))

    assert log.record(entry()) is True
    assert log.record(entry(status_code=502, error_msg="playurl API returned error")) is True

    assert log.total_requests() == 2
    assert log.status() == {"failed_writes": 0, "last_error": None}


def test_long_fields_are_truncated(tmp_path):
    log = RequestLog(db_path=str(tmp_path / "requests.db"))
    long_entry = entry(error_msg="e" * 5000, user_agent="u" * 5000)

    log.record(long_entry)

    assert len(long_entry.error_msg) == 1000
    assert len(long_entry.user_agent) == 500
    assert long_entry.created_at > 0


def test_write_failure_is_counted_not_raised(tmp_path):
    # A directory cannot be opened as a database
    log = RequestLog(db_path=str(tmp_path))

    assert log.record(entry()) is False
    assert log.record(entry()) is False

    status = log.status()
    assert status["failed_writes"] == 2
    assert status["last_error"]
    assert log.total_requests() is None
