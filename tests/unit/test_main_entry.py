import io
import json
import os
import sys
import tempfile
from pathlib import Path
import unittest
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

import questline.__main__ as runtime_main


CONTENT = {
    "entities": [
        {"id": "A", "name": "Alpha", "prerequisite_ids": ["B"]},
        {"id": "B", "name": "Bravo"},
    ],
    "requirements": [{"resource_id": "gpu", "entity_id": "A", "quantity": 2}],
}


class MainEntryTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        content_path = root / "content.json"
        content_path.write_text(json.dumps(CONTENT), encoding="utf-8")
        self.data_path = root / "progress.json"
        self.env = mock.patch.dict(
            os.environ,
            {
                "QUESTLINE_DATA_FILE": str(self.data_path),
                "QUESTLINE_CONTENT_FILE": str(content_path),
                "QUESTLINE_REMOTE": "none",
            },
            clear=False,
        )
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        self._tmp.cleanup()

    def _run(self, *argv: str) -> tuple[int, str]:
        output = io.StringIO()
        with mock.patch("sys.stdout", output):
            code = runtime_main.main(list(argv))
        return code, output.getvalue()

    def test_toggle_persists_and_status_reports_it(self) -> None:
        code, text = self._run("toggle", "B")
        self.assertEqual(0, code)
        self.assertIn("B: done", text)
        self.assertTrue(self.data_path.exists())

        code, text = self._run("status")
        self.assertEqual(0, code)
        self.assertIn("Completed: 1", text)
        self.assertIn("local only", text)

    def test_priorities_and_resources_listing(self) -> None:
        _, text = self._run("priorities")
        lines = text.strip().splitlines()
        self.assertTrue(lines[0].startswith("now"))
        self.assertIn("Bravo", lines[0])
        self.assertIn("Alpha", lines[1])

        _, text = self._run("resources")
        self.assertIn("gpu", text)
        self.assertIn("x2", text)

    def test_collected_items_reduce_resource_needs(self) -> None:
        code, text = self._run("collect", "gpu", "1")
        self.assertEqual(0, code)
        self.assertIn("gpu: 1 collected", text)

        _, text = self._run("resources")
        self.assertIn("x1", text)
        self.assertIn("have 1/2", text)

        self._run("collect", "gpu", "2")
        _, text = self._run("resources")
        self.assertNotIn("gpu", text)

    def test_explicit_state_and_reset(self) -> None:
        self._run("toggle", "A", "--set", "done")
        _, text = self._run("toggle", "A", "--set", "done")
        self.assertIn("A: done", text)

        _, text = self._run("reset")
        self.assertIn("Local progress cleared", text)
        _, text = self._run("status")
        self.assertIn("Completed: 0", text)

    def test_configuration_errors_are_reported_without_traceback(self) -> None:
        with mock.patch.dict(os.environ, {"QUESTLINE_REMOTE": "carrier-pigeon"}):
            code, text = self._run("status")

        self.assertEqual(1, code)
        self.assertIn("Reason:", text)
        self.assertIn("carrier-pigeon", text)
        self.assertIn("Help:", text)
        self.assertNotIn("Traceback", text)

    def test_keyboard_interrupt_ends_session(self) -> None:
        with mock.patch.object(runtime_main, "create_tracker_service", side_effect=KeyboardInterrupt):
            code, text = self._run("status")
        self.assertEqual(130, code)
        self.assertIn("Session ended", text)


if __name__ == "__main__":
    unittest.main()
