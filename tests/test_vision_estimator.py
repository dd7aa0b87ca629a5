from __future__ import annotations

import asyncio
import base64
from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from app.services.llm import Completion, ProviderError
from app.services.vision import VisionAnalyzer, decode_image_ref, estimate_visual_signal


FLAT = bytes([128]) * 1000
NOISY = bytes([118, 138]) * 500
GRADIENT = bytes(range(256)) * 200


class _VisionProvider:
    def __init__(self, *, text: str = "", delay_s: float = 0.0, error: Exception | None = None) -> None:
        self.text = text
        self.delay_s = delay_s
        self.error = error
        self.calls = 0

    async def complete(self, messages, tools=None, **kwargs):
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return Completion(text=self.text)

    async def embed(self, text):
        return [0.0]


class TestEstimateVisualSignal(unittest.TestCase):
    def test_no_images_is_none(self) -> None:
        self.assertIsNone(estimate_visual_signal([]))
        self.assertIsNone(estimate_visual_signal([b"", b""]))

    def test_deterministic(self) -> None:
        first = estimate_visual_signal([GRADIENT, NOISY])
        second = estimate_visual_signal([GRADIENT, NOISY])
        self.assertIsNotNone(first)
        self.assertEqual(first, second)

    def test_scores_in_unit_range(self) -> None:
        for images in ([FLAT], [NOISY], [GRADIENT], [bytes([0]) * 5000], [bytes([255, 0]) * 40000]):
            signal = estimate_visual_signal(images)
            assert signal is not None
            for value in (signal.hydration, signal.oiliness, signal.texture, signal.confidence):
                self.assertGreaterEqual(value, 0.0)
                self.assertLessEqual(value, 1.0)

    def test_oiliness_does_not_drop_with_more_variance(self) -> None:
        flat = estimate_visual_signal([FLAT])
        noisy = estimate_visual_signal([NOISY])
        assert flat is not None and noisy is not None
        self.assertGreaterEqual(noisy.oiliness, flat.oiliness)

    def test_flat_image_blend(self) -> None:
        signal = estimate_visual_signal([FLAT])
        assert signal is not None
        self.assertEqual(signal.oiliness, 0.43)
        self.assertEqual(signal.texture, 0.95)
        self.assertEqual(signal.hydration, 0.75)
        self.assertEqual(signal.detected_type, "normal")
        self.assertEqual(signal.detected_tone, "medium")
        self.assertEqual(signal.pore_visibility, "low")
        self.assertEqual(signal.concerns_detected, [])

    def test_confidence_grows_and_caps(self) -> None:
        one = estimate_visual_signal([FLAT])
        three = estimate_visual_signal([FLAT] * 3)
        five = estimate_visual_signal([FLAT] * 5)
        assert one is not None and three is not None and five is not None
        self.assertEqual(one.confidence, 0.72)
        self.assertEqual(three.confidence, 0.88)
        self.assertEqual(five.confidence, 0.88)

    def test_decode_image_ref(self) -> None:
        encoded = base64.b64encode(b"abc").decode("ascii")
        self.assertEqual(decode_image_ref(f"data:image/png;base64,{encoded}"), b"abc")
        self.assertEqual(decode_image_ref(encoded), b"abc")
        self.assertIsNone(decode_image_ref("not base64!"))
        self.assertIsNone(decode_image_ref(42))


class TestVisionAnalyzer(unittest.IsolatedAsyncioTestCase):
    async def test_without_provider_uses_estimator(self) -> None:
        signal, analyzer = await VisionAnalyzer(None).analyze([FLAT])
        self.assertEqual(analyzer, "estimator")
        self.assertEqual(signal, estimate_visual_signal([FLAT]))

    async def test_empty_input(self) -> None:
        signal, analyzer = await VisionAnalyzer(None).analyze([])
        self.assertIsNone(signal)
        self.assertEqual(analyzer, "none")

    async def test_model_result_used_when_valid(self) -> None:
        provider = _VisionProvider(
            text='{"hydration_score": 0.3, "oiliness_score": 0.8, "texture_score": 0.6, '
            '"detected_type": "oily", "concerns_detected": ["acne"], "confidence": 0.9}'
        )
        signal, analyzer = await VisionAnalyzer(provider).analyze([FLAT])
        self.assertEqual(analyzer, "model")
        assert signal is not None
        self.assertEqual(signal.detected_type, "oily")
        self.assertEqual(signal.concerns_detected, ["acne"])

    async def test_slow_model_falls_back(self) -> None:
        provider = _VisionProvider(text="{}", delay_s=0.2)
        signal, analyzer = await VisionAnalyzer(provider, timeout_s=0.01).analyze([FLAT])
        self.assertEqual(analyzer, "estimator")
        self.assertEqual(signal, estimate_visual_signal([FLAT]))

    async def test_provider_error_and_garbage_fall_back(self) -> None:
        for provider in (_VisionProvider(error=ProviderError("down")), _VisionProvider(text="sorry, no")):
            signal, analyzer = await VisionAnalyzer(provider).analyze([NOISY])
            self.assertEqual(analyzer, "estimator")
            self.assertIsNotNone(signal)


if __name__ == "__main__":
    unittest.main()
