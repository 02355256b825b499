from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# YCB-Video objects. Index is the class id; 0 is reserved for background.
CLASS_NAMES: tuple[str, ...] = (
    "__background__",
    "002_master_chef_can",
    "003_cracker_box",
    "004_sugar_box",
    "005_tomato_soup_can",
    "006_mustard_bottle",
    "007_tuna_fish_can",
    "008_pudding_box",
    "009_gelatin_box",
    "010_potted_meat_can",
    "011_banana",
    "019_pitcher_base",
    "021_bleach_cleanser",
    "024_bowl",
    "025_mug",
    "035_power_drill",
    "036_wood_block",
    "037_scissors",
    "040_large_marker",
    "051_large_clamp",
    "052_extra_large_clamp",
    "061_foam_brick",
)

# Voxel pitch [m] per class so that a 32^3 grid covers the object with margin.
CLASS_VOXEL_PITCH: dict[int, float] = {
    1: 0.0075,
    2: 0.011,
    3: 0.008,
    4: 0.0055,
    5: 0.0085,
    6: 0.004,
    7: 0.0055,
    8: 0.0045,
    9: 0.005,
    10: 0.0065,
    11: 0.0105,
    12: 0.0105,
    13: 0.0065,
    14: 0.01,
    15: 0.0075,
    16: 0.0085,
    17: 0.008,
    18: 0.0045,
    19: 0.0065,
    20: 0.0085,
    21: 0.0035,
}

DEFAULT_OBJECT_PITCH = 0.01


def class_name(class_id: int) -> str:
    if 0 <= int(class_id) < len(CLASS_NAMES):
        return CLASS_NAMES[int(class_id)]
    return f"class_{int(class_id)}"


def class_id_from_name(name: str) -> int:
    name = str(name)
    for i, n in enumerate(CLASS_NAMES):
        # "mug" matches "025_mug"
        if n == name or n.split("_", 1)[-1] == name:
            return i
    raise KeyError(f"unknown class name: {name}")


def class_id_to_voxel_pitch(
    class_id: int,
    overrides: dict[int, float] | None = None,
    default: float = DEFAULT_OBJECT_PITCH,
) -> float:
    class_id = int(class_id)
    if overrides and class_id in overrides:
        return float(overrides[class_id])
    pitch = CLASS_VOXEL_PITCH.get(class_id)
    if pitch is None:
        logger.warning("no voxel pitch for class_id=%d, using %.4f", class_id, default)
        return float(default)
    return float(pitch)
