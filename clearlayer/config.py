"""
Centralized configuration constants for the matting and selection pipeline.

Ground rules:
- float32 buffers, batch size 1
- one batch worker and one selection worker, each in its own process
"""

SEGMENTATION_MODEL = "ZhengPeng7/BiRefNet"
PROMPTABLE_MODEL = "Zigeng/SlimSAM-uniform-77"

# Square model input for the segmentation network (aspect-safe resize + pad).
TARGET_SIZE = 1024
PAD_COLOR = 127

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

LUMA_WEIGHTS = (0.299, 0.587, 0.114)

# Guided filter: radius = max(GUIDED_MIN_RADIUS, min(w, h) // GUIDED_RADIUS_DIVISOR)
GUIDED_EPSILON = 1e-4
GUIDED_MIN_RADIUS = 2
GUIDED_RADIUS_DIVISOR = 150

# Refined alpha below this becomes exactly 0 (background haze). Nothing is forced to 1.
ALPHA_FLOOR = 0.05

# Selection overlay: tinted "will be removed" colour on the display mask.
OVERLAY_RGB = (168, 85, 247)
OVERLAY_ALPHA = 120

# Raw extraction mask anti-alias band (probability space).
MASK_BAND_LOW = 0.55
MASK_BAND_HIGH = 0.70

# Control sliders, both in [0, 1].
SENSITIVITY_DEFAULT = 0.5
SMOOTHNESS_DEFAULT = 0.5
# Sensitivity 0..1 shifts the logit decision point over +/- half this range.
SENSITIVITY_LOGIT_RANGE = 8.0
# Smoothness 0 -> logits multiplied by MAX_LOGIT_GAIN (sharp), 1 -> by 1 (soft).
MAX_LOGIT_GAIN = 4.0

DEBOUNCE_SECONDS = 0.15
WORKER_POLL_SECONDS = 0.1
