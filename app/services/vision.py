from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from app.services.governor import DEADLINE_EXCEEDED, with_deadline
from app.services.llm import CompletionProvider, extract_json_object


logger = logging.getLogger("glowup-agent.vision")

MAX_SAMPLES_PER_IMAGE = 18000
MAX_MODEL_IMAGES = 3

SkinType = Literal["oily", "dry", "combination", "normal", "sensitive"]

_SKIN_TYPES = {"oily", "dry", "combination", "normal", "sensitive"}
_PORE_LEVELS = {"low", "moderate", "high"}

VISION_SYSTEM_PROMPT = (
    "Analyze skin photos for skincare routine generation. Return ONLY JSON with keys: "
    "detected_tone, detected_type (oily|dry|combination|normal|sensitive), oiliness_score, "
    "hydration_score, texture_score, concerns_detected (array of short strings), "
    "pore_visibility (low|moderate|high), confidence (0-1). Scores must be numbers between 0 and 1."
)


class VisualSignal(BaseModel):
    hydration: float = Field(ge=0.0, le=1.0)
    oiliness: float = Field(ge=0.0, le=1.0)
    texture: float = Field(ge=0.0, le=1.0)
    detected_type: SkinType
    concerns_detected: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    detected_tone: str = "medium"
    pore_visibility: str = "low"

    def as_profile_analysis(self) -> dict[str, Any]:
        """Shape stored under `skin_profiles.image_analysis`."""
        return {
            "skin": {
                "detected_type": self.detected_type,
                "detected_tone": self.detected_tone,
                "concerns_detected": list(self.concerns_detected),
                "hydration_score": self.hydration,
                "oiliness_score": self.oiliness,
                "texture_score": self.texture,
                "pore_visibility": self.pore_visibility,
                "confidence": self.confidence,
            }
        }


def clamp01(value: float) -> float:
    if value != value:
        return 0.0
    return max(0.0, min(1.0, value))


def classify_skin_type(*, oiliness: float, hydration: float) -> SkinType:
    if oiliness > 0.63:
        return "oily"
    if hydration < 0.42:
        return "dry"
    if abs(oiliness - 0.5) > 0.09:
        return "combination"
    return "normal"


def _concerns_for(*, oiliness: float, hydration: float, texture: float) -> list[str]:
    concerns: list[str] = []
    if oiliness > 0.62:
        concerns.append("slight_oiliness")
    if hydration < 0.44:
        concerns.append("dehydration_signs")
    if texture < 0.5:
        concerns.append("mild_texture")
    return concerns


def _tone_for(mean: float) -> str:
    if mean > 0.62:
        return "light-medium"
    if mean > 0.44:
        return "medium"
    return "medium-deep"


def estimate_visual_signal(images: Sequence[bytes]) -> Optional[VisualSignal]:
    """Derive skin-condition scores from raw image bytes.

    Each image is sampled at a fixed stride so at most ~18k bytes are read per
    image. The aggregate mean intensity, mean absolute successive difference
    and mean per-image variance are blended linearly into hydration, oiliness
    and texture scores. Pure and deterministic: the same bytes always produce
    the same signal. Returns None when there is nothing to sample.
    """

    buffers = [bytes(b) for b in images if b]
    if not buffers:
        return None

    byte_count = 0
    byte_sum = 0
    diff_sum = 0
    variance_sum = 0.0
    sampled_images = 0

    for buffer in buffers:
        stride = max(1, len(buffer) // MAX_SAMPLES_PER_IMAGE)
        sampled = buffer[::stride]
        local_sum = sum(sampled)
        byte_sum += local_sum
        byte_count += len(sampled)
        diff_sum += sum(abs(b - a) for a, b in zip(sampled, sampled[1:]))

        local_mean = local_sum / len(sampled)
        variance_sum += sum((v - local_mean) ** 2 for v in sampled) / len(sampled)
        sampled_images += 1

    mean = byte_sum / byte_count / 255.0
    edge_energy = clamp01(diff_sum / max(1, byte_count - 1) / 90.0)
    variance = clamp01(variance_sum / max(1, sampled_images) / 6500.0)

    hydration = clamp01(0.4 + (1 - variance) * 0.35 + (mean - 0.5) * 0.2)
    oiliness = clamp01(0.48 + variance * 0.28 + edge_energy * 0.18 - mean * 0.1)
    texture = clamp01(0.45 + (1 - edge_energy) * 0.3 + (1 - variance) * 0.2)

    return VisualSignal(
        hydration=round(hydration, 2),
        oiliness=round(oiliness, 2),
        texture=round(texture, 2),
        detected_type=classify_skin_type(oiliness=oiliness, hydration=hydration),
        concerns_detected=_concerns_for(oiliness=oiliness, hydration=hydration, texture=texture),
        confidence=round(min(0.88, 0.64 + 0.08 * len(buffers)), 2),
        detected_tone=_tone_for(mean),
        pore_visibility="moderate" if oiliness > 0.6 else "low",
    )


def decode_image_ref(ref: Any) -> Optional[bytes]:
    """Decode a `data:` URL or bare base64 string; anything else is None."""
    if not isinstance(ref, str):
        return None
    text = ref.strip()
    if not text:
        return None
    if text.startswith("data:"):
        _, sep, encoded = text.partition(",")
        if not sep:
            return None
        text = encoded
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    return raw or None


def _to_data_url(raw: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(raw).decode("ascii")


def _signal_from_model(obj: Optional[dict[str, Any]]) -> Optional[VisualSignal]:
    if not obj:
        return None

    def _score(key: str) -> Optional[float]:
        try:
            return clamp01(float(obj.get(key)))
        except (TypeError, ValueError):
            return None

    hydration = _score("hydration_score")
    oiliness = _score("oiliness_score")
    texture = _score("texture_score")
    if hydration is None or oiliness is None or texture is None:
        return None

    detected_type = str(obj.get("detected_type") or "").strip().lower()
    if detected_type not in _SKIN_TYPES:
        detected_type = classify_skin_type(oiliness=oiliness, hydration=hydration)

    concerns_raw = obj.get("concerns_detected")
    concerns = [str(c) for c in concerns_raw[:5]] if isinstance(concerns_raw, list) else []

    pores = str(obj.get("pore_visibility") or "").strip().lower()
    confidence = _score("confidence")

    return VisualSignal(
        hydration=round(hydration, 2),
        oiliness=round(oiliness, 2),
        texture=round(texture, 2),
        detected_type=detected_type,  # type: ignore[arg-type]
        concerns_detected=concerns,
        confidence=round(confidence if confidence is not None else 0.7, 2),
        detected_tone=str(obj.get("detected_tone") or "medium"),
        pore_visibility=pores if pores in _PORE_LEVELS else "moderate",
    )


class VisionAnalyzer:
    """Model-based skin analysis with the deterministic estimator as fallback."""

    def __init__(
        self,
        provider: Optional[CompletionProvider],
        *,
        model: Optional[str] = None,
        timeout_s: float = 20.0,
    ) -> None:
        self._provider = provider
        self._model = model
        self._timeout_s = timeout_s

    async def _analyze_with_model(
        self, provider: CompletionProvider, images: Sequence[bytes]
    ) -> Optional[VisualSignal]:
        content: list[dict[str, Any]] = [{"type": "text", "text": "Evaluate the photos and return the JSON only."}]
        for raw in images[:MAX_MODEL_IMAGES]:
            content.append({"type": "image_url", "image_url": {"url": _to_data_url(raw), "detail": "low"}})

        completion = await provider.complete(
            [
                {"role": "system", "content": VISION_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            model=self._model,
            temperature=0.2,
            max_tokens=700,
            json_mode=True,
        )
        return _signal_from_model(extract_json_object(completion.text or ""))

    async def analyze(self, images: Sequence[bytes]) -> tuple[Optional[VisualSignal], str]:
        usable = [bytes(b) for b in images if b]
        if not usable:
            return None, "none"

        if self._provider is not None:
            try:
                signal = await with_deadline(
                    self._analyze_with_model(self._provider, usable), self._timeout_s, DEADLINE_EXCEEDED
                )
            except Exception as exc:
                logger.warning("vision_model_failed; using estimator. err=%s", exc)
                signal = None
            if signal is DEADLINE_EXCEEDED:
                logger.warning("vision_model_timeout timeout_s=%s; using estimator", self._timeout_s)
                signal = None
            if signal is not None:
                return signal, "model"

        return estimate_visual_signal(usable), "estimator"
