from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping


CREDIT_COSTS: dict[str, int] = {
    "text_to_image": 30,
    "image_to_image": 30,
    "text_to_video": 80,
    "image_to_video": 80,
}

GENERATION_TYPE_NAMES: dict[str, str] = {
    "text_to_image": "Text to Image",
    "image_to_image": "Image to Image",
    "text_to_video": "Text to Video",
    "image_to_video": "Image to Video",
}

# Storage category per generation kind; used in artifact keys.
GENERATION_CATEGORY: dict[str, str] = {
    "text_to_image": "images",
    "image_to_image": "images",
    "text_to_video": "videos",
    "image_to_video": "videos",
}


@dataclass(frozen=True)
class CreditPack:
    pack_id: str
    credits: int
    price_cents: int
    name: str


CREDIT_PACKS: dict[str, CreditPack] = {
    "small": CreditPack("small", 7000, 500, "Small Pack"),
    "medium": CreditPack("medium", 15000, 2000, "Medium Pack"),
    "large": CreditPack("large", 18000, 3000, "Large Pack"),
}


def is_valid_generation_type(kind: str | None) -> bool:
    return bool(kind) and kind in CREDIT_COSTS


def generation_type_name(kind: str) -> str:
    return GENERATION_TYPE_NAMES.get(kind, kind)


def get_credit_cost(kind: str, overrides: Mapping[str, int] | None = None) -> int:
    if not is_valid_generation_type(kind):
        raise ValueError(f"Unknown generation type: {kind}")
    if overrides and kind in overrides:
        return int(overrides[kind])
    return CREDIT_COSTS[kind]


def calculate_total_cost(kinds: Iterable[str], overrides: Mapping[str, int] | None = None) -> int:
    return sum(get_credit_cost(kind, overrides) for kind in kinds)


def cost_table(overrides: Mapping[str, int] | None = None) -> list[dict[str, Any]]:
    return [
        {"type": kind, "name": generation_type_name(kind), "credits": get_credit_cost(kind, overrides)}
        for kind in CREDIT_COSTS
    ]


def get_credit_pack(pack_id: str | None) -> CreditPack | None:
    if not pack_id:
        return None
    return CREDIT_PACKS.get(pack_id.strip().lower())


def insufficient_credits_message(kind: str, required: int, current: int) -> str:
    return (
        f"You need {required} credits to generate {generation_type_name(kind)}, "
        f"but you only have {current} credits."
    )
