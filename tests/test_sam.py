import numpy as np
import pytest
import torch
from transformers import SamConfig, SamImageProcessor, SamModel, SamProcessor

from clearlayer.masks import Point, scale_points, with_corner_anchors
from clearlayer.protocol import DecodeCommand, DecodedStatus, EncodeCommand, EncodedStatus, PreloadCommand
from clearlayer.sam import ImageEmbedding, SamPromptableModel
from clearlayer.session import SegmentationSession

from conftest import decode_rgba, png_bytes


@pytest.fixture(scope="module")
def tiny_sam() -> SamPromptableModel:
    # random weights, no download: one windowed ViT layer in front of the stock prompt encoder/decoder
    torch.manual_seed(0)
    config = SamConfig(
        vision_config=dict(
            hidden_size=32,
            num_hidden_layers=1,
            num_attention_heads=2,
            mlp_dim=64,
            global_attn_indexes=[],
        ),
    )
    model = SamModel(config).eval()
    processor = SamProcessor(image_processor=SamImageProcessor())
    return SamPromptableModel(model, processor, torch.device("cpu"))


def _rgb(h: int = 60, w: int = 80) -> np.ndarray:
    img = np.full((h, w, 3), 30, dtype=np.uint8)
    img[15:45, 20:60] = (220, 200, 180)
    return img


def test_encode_reports_original_and_reshaped_sizes(tiny_sam):
    emb = tiny_sam.encode(_rgb())
    assert isinstance(emb, ImageEmbedding)
    assert emb.original_size == (60, 80)
    assert emb.reshaped_size == (768, 1024)


def test_decode_returns_three_candidates_at_image_size(tiny_sam):
    emb = tiny_sam.encode(_rgb())
    points = with_corner_anchors([Point(40, 30)], 80, 60)
    scale_x = emb.reshaped_size[1] / emb.original_size[1]
    scale_y = emb.reshaped_size[0] / emb.original_size[0]
    coords, labels = scale_points(points, scale_x, scale_y)

    logits, scores = tiny_sam.decode(emb, coords, labels)
    assert logits.shape == (3, 60, 80)
    assert scores.shape == (3,)
    assert logits.dtype == np.float32
    assert np.isfinite(logits).all() and np.isfinite(scores).all()
    # unbinarized logits, not a 0/1 mask
    assert len(np.unique(logits)) > 2


def test_session_decodes_through_the_sam_wrapper(tiny_sam):
    session = SegmentationSession(lambda: (tiny_sam, "cpu"))
    list(session.handle(PreloadCommand()))
    assert list(session.handle(EncodeCommand(uuid="s", image=png_bytes(60, 80)))) == [EncodedStatus(uuid="s")]

    (decoded,) = session.handle(DecodeCommand(uuid="s", points=[(40, 30)], labels=[1]))
    assert isinstance(decoded, DecodedStatus)
    assert decoded.mask_index in (0, 1, 2)
    assert decode_rgba(decoded.display_mask).shape == (60, 80, 4)
    assert decode_rgba(decoded.raw_mask).shape == (60, 80, 4)
