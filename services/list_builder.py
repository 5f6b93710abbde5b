# services/list_builder.py
"""Turns a randomization design into ordered treatment assignments.

Three designs are supported:

* ``simple``: every slot is an independent ratio-weighted draw.
* ``block``: permuted blocks that each honour the allocation ratio exactly,
  optionally with a block size drawn per block from a list of sizes.
* ``stratified``: the block algorithm run independently for every
  combination of stratification factor values.

All draws come from one ``SeededPRNG`` so the same seed and design always
produce the same list.
"""
import math
from collections import namedtuple

from services.errors import ValidationError

DEFAULT_STRATUM = "default"

Slot = namedtuple("Slot", ["group_id", "block_number"])


def stratum_keys(factors):
    """Cartesian product of factor values, e.g. ``["age:<65|sex:M", ...]``."""
    if not factors:
        return [DEFAULT_STRATUM]

    combinations = [[]]
    for factor in factors:
        combinations = [
            combo + [f"{factor['name']}:{value}"]
            for combo in combinations
            for value in factor["values"]
        ]
    return ["|".join(combo) for combo in combinations]


def stratum_key_for(factors, stratum_values):
    """Key of the stratum a subject with ``stratum_values`` belongs to."""
    stratum_values = stratum_values or {}
    parts = []
    for factor in factors:
        value = stratum_values.get(factor["name"])
        if value is None or value == "":
            raise ValidationError(f"Missing stratification value for factor: {factor['name']}")
        value = str(value)
        if value not in factor["values"]:
            raise ValidationError(
                f"Invalid value '{value}' for factor {factor['name']}; "
                f"expected one of {', '.join(factor['values'])}"
            )
        parts.append(f"{factor['name']}:{value}")
    return "|".join(parts)


def _check_groups(ratios):
    if len(ratios) < 2:
        raise ValidationError("At least 2 treatment groups with allocation ratios are required")


def simple_list(prng, ratios, total_slots):
    _check_groups(ratios)
    total_ratio = sum(ratios.values())
    group_ids = list(ratios)

    slots = []
    for _ in range(total_slots):
        draw = prng.next() * total_ratio
        selected = group_ids[0]
        cumulative = 0
        for gid in group_ids:
            cumulative += ratios[gid]
            if cumulative >= draw:
                selected = gid
                break
        slots.append(Slot(selected, 0))
    return slots


def block_list(prng, ratios, block_size, total_slots, block_sizes=None):
    """Permuted blocks until ``total_slots`` are filled.

    ``block_sizes`` switches on variable block sizes: each block's size is
    drawn from it before the block is built.
    """
    _check_groups(ratios)
    total_ratio = sum(ratios.values())

    slots = []
    block_number = 1
    while len(slots) < total_slots:
        size = block_size
        if block_sizes:
            size = block_sizes[prng.next_int(len(block_sizes))]

        multiplier = max(1, size // total_ratio)
        block = []
        for gid, ratio in ratios.items():
            block.extend([gid] * (ratio * multiplier))
        prng.shuffle(block)

        for gid in block[:total_slots - len(slots)]:
            slots.append(Slot(gid, block_number))
        block_number += 1
    return slots


def build_list(prng, design, total_slots=None):
    """Generate the full list for ``design``.

    ``design`` is a dict with ``randomization_type``, ``ratios`` (int keys,
    ascending), ``block_size``, ``block_size_varied``, ``block_sizes`` and
    ``factors``. Returns ``{stratum_key: [Slot, ...]}`` in generation order.
    """
    total_slots = design["total_slots"] if total_slots is None else total_slots
    ratios = design["ratios"]
    _check_groups(ratios)

    if design["randomization_type"] == "stratified":
        keys = stratum_keys(design["factors"])
    else:
        keys = [DEFAULT_STRATUM]
    per_stratum = math.ceil(total_slots / len(keys))

    block_sizes = design["block_sizes"] if design["block_size_varied"] else None

    lists = {}
    for key in keys:
        if design["randomization_type"] == "simple":
            lists[key] = simple_list(prng, ratios, per_stratum)
        else:
            lists[key] = block_list(prng, ratios, design["block_size"], per_stratum, block_sizes)
    return lists
