"""Prompt templates, camera angle presets and model personas for catalog image generation."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence


# --- CAMERA ANGLES ---


class ProductImageAngle(str, Enum):
    FRONT = "front"
    FRONT_THREE_QUARTER_LEFT = "front_three_quarter_left"
    FRONT_THREE_QUARTER_RIGHT = "front_three_quarter_right"
    LEFT_PROFILE = "left_profile"
    RIGHT_PROFILE = "right_profile"
    BACK = "back"

    @property
    def instruction(self) -> str:
        return ANGLE_INSTRUCTIONS[self]

    @classmethod
    def parse(cls, value: object) -> Optional["ProductImageAngle"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


ANGLE_INSTRUCTIONS = {
    ProductImageAngle.FRONT: "Front full-body camera angle, model facing camera directly.",
    ProductImageAngle.FRONT_THREE_QUARTER_LEFT: "3/4 left camera angle (about 25 degrees), full body visible.",
    ProductImageAngle.FRONT_THREE_QUARTER_RIGHT: "3/4 right camera angle (about 25 degrees), full body visible.",
    ProductImageAngle.LEFT_PROFILE: "Left side profile camera angle, full body visible.",
    ProductImageAngle.RIGHT_PROFILE: "Right side profile camera angle, full body visible.",
    ProductImageAngle.BACK: "Back full-body camera angle, full body visible.",
}

# Most specific names first so "front" never shadows the three-quarter presets.
_URL_ANGLE_CANDIDATES = (
    ProductImageAngle.FRONT_THREE_QUARTER_LEFT,
    ProductImageAngle.FRONT_THREE_QUARTER_RIGHT,
    ProductImageAngle.LEFT_PROFILE,
    ProductImageAngle.RIGHT_PROFILE,
    ProductImageAngle.BACK,
    ProductImageAngle.FRONT,
)

# Order used when several variants are requested in auto angle mode.
AUTO_VARIANT_ANGLES = (
    ProductImageAngle.FRONT,
    ProductImageAngle.FRONT_THREE_QUARTER_LEFT,
    ProductImageAngle.LEFT_PROFILE,
    ProductImageAngle.BACK,
    ProductImageAngle.RIGHT_PROFILE,
    ProductImageAngle.FRONT_THREE_QUARTER_RIGHT,
)


def infer_angle_from_url(url: str) -> Optional[ProductImageAngle]:
    normalized = url.lower()
    for angle in _URL_ANGLE_CANDIDATES:
        name = angle.value
        if (
            f"-{name}-" in normalized
            or f"_{name}_" in normalized
            or f"/{name}-" in normalized
            or f"/{name}_" in normalized
        ):
            return angle
    return None


def variant_angle(index: int, variant_count: int, angle_mode: str = "auto") -> ProductImageAngle:
    if angle_mode == "front_only" or variant_count <= 1:
        return ProductImageAngle.FRONT
    return AUTO_VARIANT_ANGLES[index % len(AUTO_VARIANT_ANGLES)]


# --- MODEL PERSONAS ---


@dataclass(frozen=True)
class ModelProfile:
    id: str
    label: str
    description: str

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "description": self.description}


MODEL_PROFILES: List[ModelProfile] = [
    ModelProfile(
        "model_01",
        "Model 01",
        "adult Latina woman with warm medium skin tone, shoulder-length dark brown hair, polished natural makeup",
    ),
    ModelProfile(
        "model_02",
        "Model 02",
        "adult Black woman with deep skin tone, short natural curls, clean editorial makeup",
    ),
    ModelProfile(
        "model_03",
        "Model 03",
        "adult woman with fair skin, straight ash-blonde hair, refined glam makeup",
    ),
    ModelProfile(
        "model_04",
        "Model 04",
        "adult woman with olive skin, long wavy brunette hair, premium studio beauty look",
    ),
    ModelProfile(
        "model_05",
        "Model 05",
        "adult East Asian woman with light skin, sleek black bob haircut, soft natural makeup",
    ),
    ModelProfile(
        "model_06",
        "Model 06",
        "adult South Asian woman with medium-brown skin, long straight black hair, subtle luminous makeup",
    ),
    ModelProfile(
        "model_07",
        "Model 07",
        "adult woman with tan skin, auburn wavy hair, professional daytime makeup",
    ),
    ModelProfile(
        "model_08",
        "Model 08",
        "adult woman with deep tan skin, platinum-blonde curls, precise high-fashion makeup",
    ),
    ModelProfile(
        "model_09",
        "Model 09",
        "adult woman with fair-to-light skin, long copper hair, defined but natural makeup",
    ),
    ModelProfile(
        "model_10",
        "Model 10",
        "adult Afro-Latina woman with rich brown skin, shoulder-length curls, elegant studio makeup",
    ),
]


def pick_profile(
    preferred_profile_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> ModelProfile:
    """Return the preferred persona when it exists, otherwise a random one."""
    if preferred_profile_id:
        for profile in MODEL_PROFILES:
            if profile.id == preferred_profile_id:
                return profile
    chooser = rng or random.SystemRandom()
    return chooser.choice(MODEL_PROFILES)


# --- GENERATION PROMPT ---

PROMPT_TEMPLATE = """You are an expert ecommerce fashion photographer and retoucher.
Generate one premium studio product image from the provided references.

Source fidelity rules (mandatory):
- Use the garment from all references as the exact same product.
- Treat reference image #1 as canonical and use other references only to recover missing details.
- Preserve exact construction details: panel cuts, seams, stitch lines, hook/zip closure rows, strap width/placement, leg length, edge trims, lace motifs, and compression zones.
- Preserve exact garment color family and tone. Do not shift hue or saturation beyond realistic studio lighting.
- Preserve textile realism: weave, micro-wrinkles, material sheen, and fabric thickness must look physically plausible.
- Do not redesign, simplify, or invent new garment features.
- If a person appears in reference, replace only the person using this model profile while keeping garment identity unchanged: {PROFILE_DESCRIPTION}.

Model, pose, and framing rules:
- Exactly one adult female model, full body visible from head to feet, centered.
- Camera angle: {ANGLE_INSTRUCTION}
- {POSE_DESCRIPTION}
- Keep anatomy natural and realistic: correct hands/fingers, shoulders, hips, limbs, and body proportions.
- Keep garment fit flattering but realistic; no extreme body warping.
- Maintain clean composition with padding around silhouette for storefront card cropping.
{ANCHOR_RULE}
Lighting and camera rules:
- High-end studio look, soft key + fill lighting, controlled highlights, minimal harsh shadows.
- Sharp focus on garment texture and closures; avoid blur and over-smoothing.
- Photorealistic skin texture and face detail; avoid plastic skin.
- No cinematic color grading, no stylized filters.

Output constraints (mandatory):
- Background must be truly transparent (real alpha), with clean edges around hair, body, and garment.
- Return a transparent PNG suitable for ecommerce listing cards.
- No text, logos, watermark, props, furniture, extra people, mirrored duplicates, or collage layout.
- No checkerboard, no fake transparency pattern, no solid studio backdrop in final output.

Quality checklist before returning:
- Garment details match references and remain structurally consistent.
- Model anatomy looks natural (especially hands and feet).
- Product edges are clean with no jagged halos.
- Final render is marketing-ready, high-detail, and catalog quality.
"""


@dataclass(frozen=True)
class PromptDefaults:
    """Default wording for the generation prompt."""

    front_pose: str = (
        "Frontal ecommerce pose, neutral confident expression, arms relaxed with slight separation from torso."
    )
    angled_pose: str = (
        "Natural ecommerce pose suited to the camera angle, neutral confident expression, arms relaxed."
    )
    anchor_rule: str = (
        "- A previously generated variant is provided as consistency anchor: keep the same model identity, "
        "hair, makeup, and garment details; only the camera angle changes.\n"
    )
    max_custom_prompt_chars: int = 1200


DEFAULTS = PromptDefaults()

COLOR_REFERENCE_NOTE = (
    "The next image is color reference only. Keep garment design from previous references "
    "and use this image only to match garment color tone."
)
ANCHOR_REFERENCE_NOTE = (
    "The next image is a previously generated variant of this product. Keep the same model "
    "identity and garment details, and only change the camera angle."
)


def build_generation_prompt(
    profile: ModelProfile,
    angle: ProductImageAngle = ProductImageAngle.FRONT,
    reference_image_count: int = 1,
    has_color_reference: bool = False,
    has_anchor: bool = False,
    product_name: Optional[str] = None,
    product_category: Optional[str] = None,
    product_colors: Optional[Sequence[str]] = None,
    target_color: Optional[str] = None,
    custom_prompt: Optional[str] = None,
) -> str:
    """Render the studio generation prompt with product context and user adjustments."""
    context_parts = [
        f"Product name: {product_name}." if product_name else "",
        f"Category: {product_category}." if product_category else "",
        f"Color hints from catalog: {', '.join(product_colors)}." if product_colors else "",
        (
            f"Target garment color for this generation: {target_color}. Prioritize this tone exactly."
            if target_color
            else ""
        ),
        f"Number of garment reference images provided: {reference_image_count}.",
        (
            "A separate color reference image is also provided. Use it only to match garment color tone."
            if has_color_reference
            else ""
        ),
    ]

    prompt = PROMPT_TEMPLATE.format(
        PROFILE_DESCRIPTION=profile.description,
        ANGLE_INSTRUCTION=angle.instruction,
        POSE_DESCRIPTION=(
            DEFAULTS.front_pose if angle == ProductImageAngle.FRONT else DEFAULTS.angled_pose
        ),
        ANCHOR_RULE=DEFAULTS.anchor_rule if has_anchor else "",
    )
    prompt += "\n" + "\n".join(part for part in context_parts if part)

    cleaned_custom = (custom_prompt or "").strip()[: DEFAULTS.max_custom_prompt_chars]
    if cleaned_custom:
        prompt += f"\n\nUser adjustment instructions:\n{cleaned_custom}"

    return prompt.strip()


# --- TRANSPARENCY REPAIR PROMPTS ---

SOFT_REPAIR_PROMPT = """Remove the entire background from this image and keep only the model with the garment.
Return a high-quality transparent PNG with clean and precise alpha edges.
Do not alter body pose, facial expression, garment details, color, or proportions.
No text, no shadows, no props, no extra objects.
Keep original sharpness and texture detail; do not apply beauty smoothing or style changes."""

STRICT_REPAIR_PROMPT = """Remove every background element and return only the model with garment.
If there is a checkerboard, textured, studio, or any solid background, remove it completely.
The output must be a transparent PNG with real alpha channel (RGBA), not a fake checkerboard.
Keep body pose, face, garment shape, seams, and color exactly the same.
No text, no watermark, no props, no extra objects.
Preserve edge detail around hair, straps, and lace without blurring."""


__all__ = [
    "ProductImageAngle",
    "AUTO_VARIANT_ANGLES",
    "ModelProfile",
    "MODEL_PROFILES",
    "PROMPT_TEMPLATE",
    "DEFAULTS",
    "PromptDefaults",
    "COLOR_REFERENCE_NOTE",
    "ANCHOR_REFERENCE_NOTE",
    "SOFT_REPAIR_PROMPT",
    "STRICT_REPAIR_PROMPT",
    "build_generation_prompt",
    "infer_angle_from_url",
    "pick_profile",
    "variant_angle",
]
