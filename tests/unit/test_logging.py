"""
Unit tests for log formatting
"""

import logging

from core.logging import TaskContextFilter


def make_record(**extra):
    record = logging.LogRecord("ingestion.scheduler", logging.INFO, __file__, 1, "Task claimed", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_fields_are_appended():
    record = make_record(task_id=7, worker_id="host-0")

    assert TaskContextFilter().filter(record)
    assert record.context == " [task_id=7 worker_id=host-0]"


def test_no_context():
    record = make_record()

    TaskContextFilter().filter(record)

    assert record.context == ""
