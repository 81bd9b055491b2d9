import io
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path

from PIL import Image

from koascan.device.main import main
from koascan.history.storage import SQLiteHistoryStore


class DeviceMainTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp.name)
        self.data_dir = self.tmp_path / "data"
        self.image = self.tmp_path / "knee.jpg"
        Image.new("RGB", (40, 30), color="gray").save(self.image, format="JPEG")

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _run(self, *argv: str) -> tuple[int, str]:
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = main(["--data-dir", str(self.data_dir), "--api", "mock", *argv])
        return code, buf.getvalue()

    def test_classify_with_mock_saves_history_and_result(self) -> None:
        code, output = self._run("--force-grade", "3", "classify", str(self.image), "--save")

        self.assertEqual(code, 0)
        self.assertIn("KL grade:    3", output)
        self.assertIn("Saved result to", output)
        self.assertEqual(len(list((self.data_dir / "results").glob("koa_result_*.jpg"))), 1)

        with SQLiteHistoryStore(self.data_dir / "history.db") as store:
            records = store.list_all()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].predicted_grade, 3)

    def test_history_list_show_and_delete(self) -> None:
        self._run("classify", str(self.image))
        with SQLiteHistoryStore(self.data_dir / "history.db") as store:
            record_id = store.list_all()[0].id

        code, output = self._run("history")
        self.assertEqual(code, 0)
        self.assertIn("1 classification(s)", output)
        self.assertIn(record_id, output)

        code, output = self._run("history", "show", record_id)
        self.assertEqual(code, 0)
        self.assertIn(f"id:          {record_id}", output)

        code, _ = self._run("history", "delete", record_id)
        self.assertEqual(code, 0)
        code, output = self._run("history", "delete", record_id)
        self.assertEqual(code, 1)
        self.assertIn("not found", output)

    def test_unsupported_format_exits_with_error(self) -> None:
        bad = self.tmp_path / "knee.gif"
        bad.write_bytes(b"GIF89a")

        code, output = self._run("classify", str(bad))

        self.assertEqual(code, 1)
        self.assertIn("Only JPEG and PNG", output)

    def test_settings_commands(self) -> None:
        code, output = self._run("settings", "set-endpoint", "https://koa.example/predict")
        self.assertEqual(code, 0)
        self.assertTrue((self.data_dir / "settings.json").exists())

        code, output = self._run("settings", "set-endpoint", "nope")
        self.assertEqual(code, 1)

        code, output = self._run("settings", "reset")
        self.assertEqual(code, 0)
        self.assertFalse((self.data_dir / "settings.json").exists())


if __name__ == "__main__":
    unittest.main()
