"""JSON log formatter: lifecycle extras are emitted, unknown attributes are not."""

import json
import logging

from qahub.middleware.logging_config import EXTRA_FIELDS, JSONFormatter


def _record(**extra):
    record = logging.LogRecord("qahub.services", logging.INFO, __file__, 10, "Applied %s", ("resolve",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_lifecycle_extras_are_emitted():
    line = JSONFormatter().format(_record(entity_type="defect", entity_id=7, action="resolve", sid="abc"))
    entry = json.loads(line)
    assert entry["message"] == "Applied resolve"
    assert entry["entity_type"] == "defect"
    assert entry["entity_id"] == 7
    assert entry["action"] == "resolve"
    assert entry["sid"] == "abc"
    assert "user_id" not in entry


def test_request_timing_fields_are_not_carried():
    assert not {"method", "path", "status", "duration_ms"} & set(EXTRA_FIELDS)
    entry = json.loads(JSONFormatter().format(_record(duration_ms=12.5)))
    assert "duration_ms" not in entry
