# services/preview.py
import secrets

from sqlalchemy import select

from models import TreatmentArm
from services import list_builder
from services.config_store import builder_design, normalize_design
from services.seeded_prng import SeededPRNG

DEFAULT_PREVIEW_LIMIT = 50


def preview_design(session, data, limit=DEFAULT_PREVIEW_LIMIT):
    """Sample list for an unsaved design, generated from a throwaway seed.

    Only the first stratum is generated, capped at ``limit`` slots. Nothing
    is written.
    """
    design = builder_design(normalize_design(data))
    group_ids = list(design["ratios"])

    names = dict(session.execute(
        select(TreatmentArm.id, TreatmentArm.name).where(TreatmentArm.id.in_(group_ids))
    ).all())

    stratum = list_builder.stratum_keys(design["factors"])[0]
    size = min(design["total_slots"], limit)
    prng = SeededPRNG(secrets.token_hex(32))
    if design["randomization_type"] == "simple":
        slots = list_builder.simple_list(prng, design["ratios"], size)
    else:
        block_sizes = design["block_sizes"] if design["block_size_varied"] else None
        slots = list_builder.block_list(prng, design["ratios"], design["block_size"], size, block_sizes)

    preview = [
        {
            "sequence": i,
            "group_id": slot.group_id,
            "group_name": names.get(slot.group_id, f"Group {slot.group_id}"),
            "block": slot.block_number,
            "stratum": stratum
        } for i, slot in enumerate(slots, start=1)
    ]

    counts = {gid: 0 for gid in group_ids}
    for slot in slots:
        counts[slot.group_id] += 1
    stats = [
        {
            "group_id": gid,
            "group_name": names.get(gid, f"Group {gid}"),
            "count": counts[gid],
            "percentage": round(counts[gid] / len(slots) * 100) if slots else 0
        } for gid in group_ids
    ]
    return {"preview": preview, "stats": stats}
