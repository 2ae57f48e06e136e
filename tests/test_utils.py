import json
import logging
import unittest

from relaybot.app_logging import FieldsFormatter, JsonFormatter
from relaybot.utils import new_job_id, new_worker_id, now_ms


class UtilsTest(unittest.TestCase):
    def test_ids(self) -> None:
        self.assertEqual(len(new_worker_id()), 12)
        self.assertNotIn(":", new_job_id())
        self.assertNotEqual(new_job_id(), new_job_id())

    def test_now_ms(self) -> None:
        self.assertIsInstance(now_ms(), int)
        self.assertGreater(now_ms(), 1_600_000_000_000)


class FormatterTest(unittest.TestCase):
    def record(self) -> logging.LogRecord:
        record = logging.LogRecord("relaybot", logging.INFO, __file__, 1, "job_added", None, None)
        record.extra_fields = {"job_id": "j1", "priority": 0}
        return record

    def test_json_formatter_merges_fields(self) -> None:
        payload = json.loads(JsonFormatter().format(self.record()))
        self.assertEqual(payload["message"], "job_added")
        self.assertEqual(payload["level"], "INFO")
        self.assertEqual(payload["job_id"], "j1")

    def test_fields_formatter_appends_pairs(self) -> None:
        line = FieldsFormatter("%(levelname)s %(message)s").format(self.record())
        self.assertEqual(line, "INFO job_added job_id=j1 priority=0")


if __name__ == "__main__":
    unittest.main()
