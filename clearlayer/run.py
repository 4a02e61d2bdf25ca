from __future__ import annotations

import argparse
import os
import time
from functools import partial
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv
from tqdm import tqdm

from .composite import MattingParams
from .config import (
    GUIDED_EPSILON,
    PROMPTABLE_MODEL,
    SEGMENTATION_MODEL,
    SENSITIVITY_DEFAULT,
    SMOOTHNESS_DEFAULT,
    WORKER_POLL_SECONDS,
)
from .controller import SelectionController
from .coordinator import ItemStatus, ProcessingCoordinator
from .inference import load_segmenter
from .masks import Point
from .matting_worker import BatchMattingWorker
from .protocol import CompleteStatus, ErrorStatus
from .sam import load_promptable
from .session import SegmentationSession
from .worker import WorkerHost


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def _parse_point(text: str) -> Point:
    try:
        x, y, label = text.split(",")
        return Point(float(x), float(y), int(label))
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Expected X,Y,LABEL (label 1=keep, 0=remove), got {text!r}") from e


def _pump(host: WorkerHost, handle: Callable, done: Callable[[], bool], timeout: float) -> None:
    deadline = time.monotonic() + timeout
    while not done():
        if time.monotonic() > deadline:
            raise TimeoutError(f"Worker {host.name} did not respond within {timeout:.0f}s")
        status = host.receive(timeout=WORKER_POLL_SECONDS)
        if status is None:
            if not host.alive:
                raise RuntimeError(f"Worker {host.name} exited unexpectedly")
            continue
        handle(status)


def run_batch(args: argparse.Namespace) -> int:
    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    factory = partial(
        BatchMattingWorker,
        partial(load_segmenter, args.model, args.device),
        MattingParams(epsilon=args.epsilon, radius=args.radius),
    )
    host = WorkerHost(factory, name="matting").start()
    coordinator = ProcessingCoordinator(host)
    ids = coordinator.add_images(p.read_bytes() for p in images)
    sources = dict(zip(ids, images))

    total0 = time.perf_counter()
    try:
        coordinator.preload()
        coordinator.start()
        with tqdm(total=len(ids), desc="Processing", unit="img") as bar:

            def _apply(status) -> None:
                coordinator.handle(status)
                if isinstance(status, (CompleteStatus, ErrorStatus)) and status.id in sources:
                    bar.update(1)

            _pump(
                host,
                _apply,
                lambda: coordinator.init_error is not None or not coordinator.is_playing,
                args.timeout,
            )
    finally:
        host.stop()

    if coordinator.init_error:
        print(f"Model initialization failed: {coordinator.init_error}")
        return 1

    failed = 0
    for item in coordinator.items:
        src = sources[item.id]
        if item.status == ItemStatus.DONE and item.result is not None:
            out_path = (output_dir / src.relative_to(input_dir)).with_suffix(".png")
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_bytes(item.result)
        else:
            failed += 1
            print(f"{src.name}: {item.status.value} ({item.error})")

    total1 = time.perf_counter()
    print(f"Done. {len(images) - failed}/{len(images)} images in {total1 - total0:.2f}s on {coordinator.device}")
    return 0 if failed == 0 else 2


def run_select(args: argparse.Namespace) -> int:
    image_path = Path(args.image)
    if not image_path.exists():
        raise FileNotFoundError(f"Image not found: {image_path}")

    factory = partial(SegmentationSession, partial(load_promptable, args.model, args.device))
    host = WorkerHost(factory, name="selection").start()
    controller = SelectionController(host, image_path.read_bytes(), debounce=0.0)

    def _failed() -> bool:
        return controller.error is not None

    try:
        t0 = time.perf_counter()
        controller.open()
        _pump(host, controller.handle, lambda: _failed() or controller.is_encoded, args.timeout)
        if _failed():
            print(f"Selection failed: {controller.error}")
            return 1
        t1 = time.perf_counter()

        controller.set_sensitivity(args.sensitivity)
        controller.set_smoothness(args.smoothness)
        controller.set_mask_index(args.mask_index)
        for p in args.point:
            controller.add_point(p)

        def _step(status) -> None:
            controller.handle(status)
            controller.tick()

        controller.tick()
        _pump(host, _step, lambda: _failed() or (controller.masks is not None and not controller.decode_in_flight), args.timeout)
        if _failed():
            print(f"Selection failed: {controller.error}")
            return 1
        t2 = time.perf_counter()

        controller.extract()
        _pump(host, controller.handle, lambda: _failed() or controller.result is not None, args.timeout)
        if _failed():
            print(f"Selection failed: {controller.error}")
            return 1

        out_path = Path(args.output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(controller.result)
        if args.mask_output:
            Path(args.mask_output).write_bytes(controller.previews.get(controller.masks.display))
        print(
            f"{image_path.name}: encode={t1 - t0:.3f}s decode={t2 - t1:.3f}s "
            f"(mask score={controller.mask_score:.3f}, device={controller.device}) -> {out_path}"
        )
        return 0
    finally:
        controller.close()


def main() -> int:
    load_dotenv()
    device_default = os.getenv("CLEARLAYER_DEVICE", "auto")

    parser = argparse.ArgumentParser(description="Local background removal and point-prompted selection.")
    sub = parser.add_subparsers(dest="command", required=True)

    batch = sub.add_parser("batch", help="Remove backgrounds from every image in a directory.")
    batch.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    batch.add_argument("--output", required=True, type=str, help="Output directory for RGBA PNGs.")
    batch.add_argument(
        "--model",
        default=os.getenv("CLEARLAYER_SEGMENTATION_MODEL", SEGMENTATION_MODEL),
        type=str,
        help="Hugging Face repo of the segmentation model.",
    )
    batch.add_argument("--epsilon", default=GUIDED_EPSILON, type=float, help="Guided filter epsilon (edge sensitivity).")
    batch.add_argument("--radius", default=None, type=int, help="Guided filter radius (default: adaptive).")
    batch.add_argument("--device", default=device_default, choices=["auto", "cuda", "mps", "cpu"])
    batch.add_argument("--timeout", default=3600.0, type=float, help="Overall timeout in seconds.")
    batch.set_defaults(func=run_batch)

    select = sub.add_parser("select", help="Cut out a region of one image from point prompts.")
    select.add_argument("--image", required=True, type=str, help="Image to select from.")
    select.add_argument(
        "--point",
        required=True,
        action="append",
        type=_parse_point,
        help="X,Y,LABEL in image pixels; LABEL 1 keeps, 0 removes. Repeatable.",
    )
    select.add_argument("--output", required=True, type=str, help="Output RGBA PNG.")
    select.add_argument("--mask-output", default=None, type=str, help="Optional PNG of the display overlay.")
    select.add_argument("--sensitivity", default=SENSITIVITY_DEFAULT, type=float)
    select.add_argument("--smoothness", default=SMOOTHNESS_DEFAULT, type=float)
    select.add_argument("--mask-index", default=None, type=int, help="Pin a candidate mask instead of the best score.")
    select.add_argument(
        "--model",
        default=os.getenv("CLEARLAYER_PROMPTABLE_MODEL", PROMPTABLE_MODEL),
        type=str,
        help="Hugging Face repo of the promptable segmentation model.",
    )
    select.add_argument("--device", default=device_default, choices=["auto", "cuda", "mps", "cpu"])
    select.add_argument("--timeout", default=600.0, type=float, help="Timeout per step in seconds.")
    select.set_defaults(func=run_select)

    args = parser.parse_args()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
