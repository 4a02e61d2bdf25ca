from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence, Tuple, TypeVar

import structlog
import torch

log = structlog.get_logger(__name__)

T = TypeVar("T")


def candidate_devices(preferred: Optional[str] = None) -> List[torch.device]:
    """
    Devices to try, accelerated first, CPU always last.

    `preferred` ("cuda", "mps", "cpu" or None/"auto") pins the first attempt;
    CPU stays as the final fallback.
    """
    devices: List[torch.device] = []
    if preferred and preferred != "auto":
        devices.append(torch.device(preferred))
    else:
        if torch.cuda.is_available():
            devices.append(torch.device("cuda"))
        if getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available():
            devices.append(torch.device("mps"))
    if not any(d.type == "cpu" for d in devices):
        devices.append(torch.device("cpu"))
    return devices


def load_with_fallback(
    load: Callable[[torch.device], T],
    devices: Optional[Sequence[torch.device]] = None,
) -> Tuple[T, torch.device]:
    """
    Try `load(device)` on each device in order; return the first success.

    Raises RuntimeError chained to the last failure when every device fails.
    """
    if devices is None:
        devices = candidate_devices()
    last_error: Optional[BaseException] = None
    for device in devices:
        try:
            loaded = load(device)
        except Exception as e:  # noqa: BLE001 - fall through to the next backend
            log.warning("Model load failed, trying next device", device=str(device), error=str(e))
            last_error = e
            continue
        log.info("Model loaded", device=str(device))
        return loaded, device
    raise RuntimeError(f"Model load failed on all devices ({', '.join(str(d) for d in devices)}): {last_error}") from last_error


def _freeze(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    return model.to(dtype=torch.float32).to(device)


def load_segmentation_hf(hf_repo: str, device: torch.device) -> torch.nn.Module:
    """
    Load a dichotomous segmentation model (BiRefNet family) via transformers.

    Notes:
    - float32 only.
    - Meta-device init paths are disabled; BiRefNet calls `.item()` during construction.
    - Output handling lives in inference.py (expects a logits-like tensor in the final stage).
    """
    try:
        from transformers import AutoModelForImageSegmentation
    except Exception as e:  # noqa: BLE001
        raise RuntimeError("transformers is not installed. Run: pip install transformers") from e

    torch.set_default_dtype(torch.float32)
    model = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    return _freeze(model, device)


def load_promptable_hf(hf_repo: str, device: torch.device) -> Tuple[torch.nn.Module, Any]:
    """
    Load a promptable segmentation model (SAM family) and its processor.
    """
    try:
        from transformers import SamModel, SamProcessor
    except Exception as e:  # noqa: BLE001
        raise RuntimeError("transformers is not installed. Run: pip install transformers") from e

    model = SamModel.from_pretrained(hf_repo)
    processor = SamProcessor.from_pretrained(hf_repo)
    return _freeze(model, device), processor


def forward_model(model: torch.nn.Module, x: torch.Tensor) -> Any:
    """
    Run forward pass (kept separate so inference.py can remain simple).
    """
    with torch.no_grad():
        return model(x)
