import unittest

import cv2
import numpy as np

from clearlayer.composite import resize_coarse_mask
from clearlayer.config import TARGET_SIZE
from clearlayer.preprocess import decode_image, normalize, remove_padding, resize_with_padding


class TestPreprocessAspectRatios(unittest.TestCase):
    def _make_rgb(self, h: int, w: int) -> np.ndarray:
        img = np.zeros((h, w, 3), dtype=np.uint8)
        img[..., 0] = 10
        img[..., 1] = 20
        img[..., 2] = 30
        return img

    def _make_model_mask_with_center_box(self) -> np.ndarray:
        m = np.zeros((TARGET_SIZE, TARGET_SIZE), dtype=np.float32)
        m[TARGET_SIZE // 4 : 3 * TARGET_SIZE // 4, TARGET_SIZE // 4 : 3 * TARGET_SIZE // 4] = 1.0
        return m

    def _restore(self, meta):
        coarse = remove_padding(self._make_model_mask_with_center_box(), meta)
        self.assertEqual(coarse.shape, (meta.resized_h, meta.resized_w))
        return resize_coarse_mask(coarse, meta.orig_w, meta.orig_h)

    def test_resize_with_padding_wide(self):
        padded, meta = resize_with_padding(self._make_rgb(256, 1024))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        self.assertEqual((meta.orig_h, meta.orig_w), (256, 1024))
        self.assertEqual(meta.x_offset, 0)
        self.assertEqual(meta.y_offset, (TARGET_SIZE - 256) // 2)

        restored = self._restore(meta)
        self.assertEqual(restored.shape, (256, 1024))
        self.assertTrue(np.isfinite(restored).all())

    def test_resize_with_padding_tall(self):
        padded, meta = resize_with_padding(self._make_rgb(1024, 256))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        self.assertEqual(meta.y_offset, 0)
        self.assertGreater(meta.x_offset, 0)
        # padding region carries the pad colour
        self.assertTrue((padded[:, 0] == 127).all())

        restored = self._restore(meta)
        self.assertEqual(restored.shape, (1024, 256))

    def test_resize_with_padding_square(self):
        padded, meta = resize_with_padding(self._make_rgb(800, 800))
        self.assertEqual(padded.shape, (TARGET_SIZE, TARGET_SIZE, 3))
        self.assertEqual(meta.x_offset, meta.y_offset)

        restored = self._restore(meta)
        self.assertEqual(restored.shape, (800, 800))
        self.assertAlmostEqual(float(restored[400, 400]), 1.0)
        self.assertAlmostEqual(float(restored[10, 10]), 0.0)

    def test_custom_target_size(self):
        padded, meta = resize_with_padding(self._make_rgb(30, 60), target_size=64)
        self.assertEqual(padded.shape, (64, 64, 3))
        self.assertEqual((meta.resized_h, meta.resized_w), (32, 64))
        with self.assertRaises(ValueError):
            remove_padding(np.zeros((TARGET_SIZE, TARGET_SIZE), dtype=np.float32), meta)

    def test_normalize_shape_and_rejects_non_square(self):
        padded, _ = resize_with_padding(self._make_rgb(40, 20), target_size=32)
        t = normalize(padded)
        self.assertEqual(tuple(t.shape), (1, 3, 32, 32))
        with self.assertRaises(ValueError):
            normalize(self._make_rgb(20, 40))


class TestDecodeImage(unittest.TestCase):
    def test_decodes_png_bytes_as_rgb(self):
        bgr = np.zeros((5, 7, 3), dtype=np.uint8)
        bgr[..., 2] = 255  # red in BGR order
        ok, buf = cv2.imencode(".png", bgr)
        self.assertTrue(ok)

        rgb = decode_image(buf.tobytes())
        self.assertEqual(rgb.shape, (5, 7, 3))
        self.assertEqual(rgb.dtype, np.uint8)
        self.assertEqual(tuple(rgb[0, 0]), (255, 0, 0))

    def test_rejects_empty_and_corrupt_buffers(self):
        with self.assertRaises(ValueError):
            decode_image(b"")
        with self.assertRaises(ValueError):
            decode_image(b"definitely not an image")

    def test_missing_path(self):
        with self.assertRaises(FileNotFoundError):
            decode_image("/nonexistent/photo.png")


if __name__ == "__main__":
    unittest.main()
