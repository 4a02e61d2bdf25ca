import numpy as np
import pytest

from clearlayer.protocol import (
    DecodeCommand,
    DecodedStatus,
    EncodeCommand,
    EncodedStatus,
    ErrorStatus,
    ExtractCommand,
    ExtractedStatus,
    LoadingStatus,
    PreloadCommand,
    ProcessCommand,
    ReadyStatus,
)
from clearlayer.session import SegmentationSession, SessionState

from conftest import decode_rgba, png_bytes


def _ready_session(fake_model):
    session = SegmentationSession(lambda: (fake_model, "cpu"))
    list(session.handle(PreloadCommand()))
    return session


def test_preload_reports_device(fake_model):
    session = SegmentationSession(lambda: (fake_model, "cuda"))
    out = list(session.handle(PreloadCommand()))
    assert isinstance(out[0], LoadingStatus)
    assert isinstance(out[-1], ReadyStatus)
    assert out[-1].device == "cuda"
    # second preload does not reload
    again = list(session.handle(PreloadCommand()))
    assert [type(s) for s in again] == [ReadyStatus]


def test_model_load_failure_is_worker_level_error():
    def _boom():
        raise RuntimeError("no backend")

    session = SegmentationSession(_boom)
    out = list(session.handle(PreloadCommand()))
    assert isinstance(out[-1], ErrorStatus)
    assert out[-1].id is None
    assert "no backend" in out[-1].message
    assert session.state == SessionState.IDLE


def test_encode_once_then_decode_many(fake_model):
    """Encode image A once; two decodes with evolving points reuse the embedding."""
    session = _ready_session(fake_model)
    image = png_bytes(600, 800)

    out = list(session.handle(EncodeCommand(uuid="a", image=image)))
    assert out == [EncodedStatus(uuid="a")]
    assert session.state == SessionState.READY

    first = list(session.handle(DecodeCommand(uuid="a", points=[(100, 100)], labels=[1])))
    assert len(first) == 1 and isinstance(first[0], DecodedStatus)

    second = list(
        session.handle(DecodeCommand(uuid="a", points=[(100, 100), (500, 500)], labels=[1, 0]))
    )
    assert len(second) == 1 and isinstance(second[0], DecodedStatus)
    assert second[0].display_mask != b"" and second[0].raw_mask != b""

    assert fake_model.encode_calls == 1
    assert session.encode_count == 1
    assert len(fake_model.decode_calls) == 2


def test_decode_scales_points_and_adds_corner_anchors(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes(60, 80))))
    list(session.handle(DecodeCommand(uuid="a", points=[(40, 30)], labels=[1])))

    points, labels = fake_model.decode_calls[-1]
    np.testing.assert_array_equal(labels, [1, 0, 0, 0, 0])
    # reshaped scale 0.5
    np.testing.assert_allclose(points[0], [20.0, 15.0])
    np.testing.assert_allclose(points[1:], [[0, 0], [39.5, 0], [0, 29.5], [39.5, 29.5]])

    list(session.handle(DecodeCommand(uuid="a", points=[(40, 30), (5, 5)], labels=[1, 0])))
    _, labels = fake_model.decode_calls[-1]
    np.testing.assert_array_equal(labels, [1, 0])


def test_decoded_masks_match_image_and_each_other(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes(60, 80))))
    (decoded,) = session.handle(DecodeCommand(uuid="a", points=[(40, 30)], labels=[1]))

    display = decode_rgba(decoded.display_mask)
    raw = decode_rgba(decoded.raw_mask)
    assert display.shape == raw.shape == (60, 80, 4)
    assert decoded.mask_index == 0
    # kept disc around the click, removed corners
    assert raw[30, 40, 3] == 0 and display[30, 40, 3] == 0
    assert raw[0, 0, 3] == 255 and display[0, 0, 3] > 0
    np.testing.assert_array_equal(display[..., 3] == 0, raw[..., 3] == 0)


def test_pinned_mask_index(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes(60, 80))))
    (decoded,) = session.handle(DecodeCommand(uuid="a", points=[(40, 30)], labels=[1], mask_index=1))
    assert decoded.mask_index == 1
    raw = decode_rgba(decoded.raw_mask)
    assert raw[30, 40, 3] == 255


def test_reencode_same_uuid_is_noop_and_new_uuid_replaces(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes())))
    assert list(session.handle(EncodeCommand(uuid="a", image=png_bytes()))) == [EncodedStatus(uuid="a")]
    assert fake_model.encode_calls == 1

    list(session.handle(EncodeCommand(uuid="b", image=png_bytes())))
    assert fake_model.encode_calls == 2
    assert session.context.uuid == "b"
    (err,) = session.handle(DecodeCommand(uuid="a", points=[(1, 1)], labels=[1]))
    assert isinstance(err, ErrorStatus)
    assert err.id == "a"


def test_decode_failure_leaves_session_usable(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes())))

    fake_model.fail_decode = True
    (err,) = session.handle(DecodeCommand(uuid="a", points=[(10, 10)], labels=[1]))
    assert isinstance(err, ErrorStatus) and err.id == "a"
    assert "decoder exploded" in err.message
    assert session.state == SessionState.READY

    fake_model.fail_decode = False
    (ok,) = session.handle(DecodeCommand(uuid="a", points=[(10, 10)], labels=[1]))
    assert isinstance(ok, DecodedStatus)


def test_commands_before_preload_or_encode_error(fake_model):
    session = SegmentationSession(lambda: (fake_model, "cpu"))
    (err,) = session.handle(EncodeCommand(uuid="a", image=png_bytes()))
    assert isinstance(err, ErrorStatus)

    session = _ready_session(fake_model)
    (err,) = session.handle(DecodeCommand(uuid="a", points=[(1, 1)], labels=[1]))
    assert isinstance(err, ErrorStatus)

    (err,) = session.handle(ProcessCommand(id="x", image=b"123"))
    assert isinstance(err, ErrorStatus)


def test_corrupt_image_reports_error(fake_model):
    session = _ready_session(fake_model)
    (err,) = session.handle(EncodeCommand(uuid="a", image=b"not an image"))
    assert isinstance(err, ErrorStatus) and err.id == "a"
    assert session.context is None


def test_extract_applies_last_raw_mask(fake_model):
    session = _ready_session(fake_model)
    list(session.handle(EncodeCommand(uuid="a", image=png_bytes(60, 80))))
    (err,) = session.handle(ExtractCommand(uuid="a"))
    assert isinstance(err, ErrorStatus)

    list(session.handle(DecodeCommand(uuid="a", points=[(40, 30)], labels=[1])))
    (extracted,) = session.handle(ExtractCommand(uuid="a"))
    assert isinstance(extracted, ExtractedStatus)
    rgba = decode_rgba(extracted.result)
    assert rgba.shape == (60, 80, 4)
    assert rgba[30, 40, 3] == 255
    assert rgba[0, 0, 3] == 0
    assert tuple(rgba[30, 40, :3]) == (200, 30, 30)


@pytest.mark.parametrize("labels", [[2], [1, 0]])
def test_decode_command_validation(labels):
    with pytest.raises(ValueError):
        DecodeCommand(uuid="a", points=[(1, 1)], labels=labels)
