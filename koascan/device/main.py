from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from ..api.client import RemoteClassifierClient
from ..api.mock import MockClassifier
from ..api.settings import (
    AppSettings,
    reset_settings,
    resolve_settings,
    update_api_endpoint,
)
from ..errors import InvalidEndpoint, KoaScanError, RecordNotFound
from ..history.service import HistoryService
from ..history.storage import ClassificationRecord, SQLiteHistoryStore
from .capture import FileImageSource, ImageSource, OpenCVImageSource
from .gallery import DirectoryGallery
from .workflow import ClassificationWorkflow, WorkflowSnapshot, WorkflowState

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".koascan"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Classify knee X-rays by KL grade using a remote inference service"
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DEFAULT_DATA_DIR,
        help="directory holding history, heatmaps and saved results",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="settings file (default: <data-dir>/settings.json)",
    )
    parser.add_argument(
        "--api",
        choices=["mock", "http"],
        default="http",
        help="classifier backend to use",
    )
    parser.add_argument(
        "--force-grade",
        type=int,
        choices=range(5),
        default=2,
        help="grade reported by the mock classifier",
    )
    parser.add_argument(
        "--verbose", action="store_true", help="enable debug logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    classify = sub.add_parser("classify", help="classify an image file")
    classify.add_argument("image", type=Path, help="JPEG or PNG X-ray image")
    classify.add_argument(
        "--save", action="store_true", help="save a composite result image"
    )

    capture = sub.add_parser("capture", help="capture from a camera and classify")
    capture.add_argument(
        "--camera-source", default="0", help="OpenCV camera index or stream URL"
    )
    capture.add_argument(
        "--save", action="store_true", help="save a composite result image"
    )

    history = sub.add_parser("history", help="inspect classification history")
    history_sub = history.add_subparsers(dest="history_command")
    show = history_sub.add_parser("show", help="show one entry")
    show.add_argument("record_id")
    delete = history_sub.add_parser("delete", help="delete one entry")
    delete.add_argument("record_id")

    settings = sub.add_parser("settings", help="view or change endpoint settings")
    settings_sub = settings.add_subparsers(dest="settings_command")
    settings_sub.add_parser("show", help="print the resolved settings")
    set_endpoint = settings_sub.add_parser("set-endpoint", help="change the endpoint URL")
    set_endpoint.add_argument("url")
    settings_sub.add_parser("reset", help="restore default settings")
    return parser


def build_classifier(args: argparse.Namespace, settings: AppSettings) -> MockClassifier | RemoteClassifierClient:
    if args.api == "http":
        return RemoteClassifierClient(
            endpoint_url=settings.api_endpoint,
            timeout=float(settings.request_timeout),
        )
    return MockClassifier(grade=args.force_grade)


def build_image_source(args: argparse.Namespace) -> ImageSource:
    if args.command == "capture":
        try:
            source: int | str = int(args.camera_source)
        except ValueError:
            source = args.camera_source
        return OpenCVImageSource(output_dir=args.data_dir / "captures", source=source)
    return FileImageSource(select_path=args.image)


def format_record(record: ClassificationRecord) -> str:
    lines = [
        f"id:          {record.id}",
        f"KL grade:    {record.predicted_grade}",
        f"confidence:  {record.predicted_confidence * 100:.1f}%",
        f"created at:  {record.created_at.isoformat()}",
        f"image:       {record.source_image_ref}",
        f"heatmap:     {record.heatmap_image_ref}",
        "grades:      "
        + ", ".join(f"{grade}={value:.3f}" for grade, value in sorted(record.grade_confidences.items())),
    ]
    return "\n".join(lines)


def run_workflow(
    args: argparse.Namespace,
    store: SQLiteHistoryStore,
    settings: AppSettings,
) -> int:
    try:
        image_source = build_image_source(args)
    except KoaScanError as exc:
        print(f"[koascan] {exc}")
        return 1
    workflow = ClassificationWorkflow(
        image_source=image_source,
        classifier=build_classifier(args, settings),
        store=store,
        gallery=DirectoryGallery(args.data_dir / "results"),
        heatmap_dir=args.data_dir / "heatmaps",
    )
    if args.verbose:
        workflow.subscribe(
            lambda snap: print(f"[koascan] state={snap.state.value} busy={snap.is_busy}")
        )

    if args.command == "capture":
        snapshot = workflow.capture_image()
    else:
        snapshot = workflow.select_image()
    if snapshot.state is WorkflowState.IDLE:
        print("[koascan] No image acquired")
        return 1
    if snapshot.state is WorkflowState.IMAGE_READY:
        snapshot = workflow.classify()
    if snapshot.state is WorkflowState.SUCCESS and args.save:
        snapshot = workflow.save_artifact()
    return report(snapshot)


def report(snapshot: WorkflowSnapshot) -> int:
    if snapshot.record is not None:
        print(format_record(snapshot.record))
    if snapshot.warning:
        print(f"[koascan] Warning: {snapshot.warning}")
    if snapshot.saved_location:
        print(f"[koascan] Saved result to {snapshot.saved_location}")
    if snapshot.has_error:
        print(f"[koascan] Error: {snapshot.error}")
        return 1
    return 0


def run_history(args: argparse.Namespace, store: SQLiteHistoryStore) -> int:
    service = HistoryService(store)
    if args.history_command == "show":
        record = service.get_entry(args.record_id)
        if record is None:
            print(f"[koascan] No history entry {args.record_id}")
            return 1
        print(format_record(record))
        return 0
    if args.history_command == "delete":
        try:
            service.delete_entry(args.record_id)
        except RecordNotFound as exc:
            print(f"[koascan] {exc}")
            return 1
        print(f"[koascan] Deleted {args.record_id}")
        return 0

    records = service.load_history()
    print(f"{len(records)} classification(s)")
    for record in records:
        print(
            f"  {record.created_at:%Y-%m-%d %H:%M:%S}  KL-{record.predicted_grade}  "
            f"{record.predicted_confidence * 100:5.1f}%  {record.id}"
        )
    return 0


def run_settings(args: argparse.Namespace, settings_path: Path) -> int:
    if args.settings_command == "set-endpoint":
        try:
            updated = update_api_endpoint(settings_path, args.url)
        except InvalidEndpoint as exc:
            print(f"[koascan] {exc}")
            return 1
        print(f"[koascan] Endpoint set to {updated.api_endpoint}")
        return 0
    if args.settings_command == "reset":
        reset_settings(settings_path)
        print("[koascan] Settings restored to defaults")
        return 0
    settings = resolve_settings(settings_path)
    print(f"endpoint: {settings.api_endpoint}{' (default)' if settings.is_default_endpoint else ''}")
    print(f"timeout:  {settings.request_timeout}s")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.WARNING,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )

    settings_path = args.settings or args.data_dir / "settings.json"
    if args.command == "settings":
        return run_settings(args, settings_path)

    try:
        with SQLiteHistoryStore(args.data_dir / "history.db") as store:
            if args.command == "history":
                return run_history(args, store)
            return run_workflow(args, store, resolve_settings(settings_path))
    except KoaScanError as exc:
        print(f"[koascan] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
