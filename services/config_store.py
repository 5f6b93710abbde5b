# services/config_store.py
"""Randomization designs and their draft -> generated -> active lifecycle."""
import json
import logging
import re
import secrets

from sqlalchemy import func, select, update

from models import RandomizationConfig, SealedListEntry, Study, TreatmentArm, TreatmentArmClass
from services.errors import NotFoundError, StateError, ValidationError

logger = logging.getLogger(__name__)

RANDOMIZATION_TYPES = ("simple", "block", "stratified")
BLINDING_LEVELS = ("open_label", "single_blind", "double_blind", "triple_blind")

# Columns a draft design may change. Seed, study and lifecycle flags are
# deliberately absent.
UPDATABLE_COLUMNS = {
    column.key: column
    for column in (
        RandomizationConfig.name,
        RandomizationConfig.description,
        RandomizationConfig.randomization_type,
        RandomizationConfig.blinding_level,
        RandomizationConfig.block_size,
        RandomizationConfig.block_size_varied,
        RandomizationConfig.block_sizes_list,
        RandomizationConfig.allocation_ratios,
        RandomizationConfig.stratification_factors,
        RandomizationConfig.group_class_id,
        RandomizationConfig.total_slots,
    )
}

_HEX_SEED = re.compile(r"^[0-9a-fA-F]{1,128}$")


def _default(data, key, fallback):
    value = data.get(key)
    return fallback if value is None else value


def _positive_int(value, field):
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive integer")
    if number != value and str(number) != str(value).strip():
        raise ValidationError(f"{field} must be a positive integer")
    if number < 1:
        raise ValidationError(f"{field} must be a positive integer")
    return number


def _parse_ratios(raw):
    if not isinstance(raw, dict):
        raise ValidationError("allocation_ratios must be an object mapping group id to ratio")
    if len(raw) < 2:
        raise ValidationError("At least 2 treatment groups with allocation ratios are required")
    ratios = {}
    for gid, ratio in raw.items():
        try:
            group_id = int(gid)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid treatment group id: {gid}")
        ratios[group_id] = _positive_int(ratio, f"Allocation ratio for group {gid}")
    return dict(sorted(ratios.items()))


def _parse_factors(raw):
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("stratification_factors must be a list")
    factors = []
    seen = set()
    for factor in raw:
        if not isinstance(factor, dict) or not factor.get("name"):
            raise ValidationError("Each stratification factor needs a name")
        name = str(factor["name"])
        if "|" in name or ":" in name:
            raise ValidationError(f"Factor name may not contain '|' or ':': {name}")
        if name in seen:
            raise ValidationError(f"Duplicate stratification factor: {name}")
        seen.add(name)
        values = factor.get("values")
        if not isinstance(values, list) or not values:
            raise ValidationError(f"Factor {name} needs at least one value")
        values = [str(v) for v in values]
        if any(not v or "|" in v for v in values):
            raise ValidationError(f"Factor {name} has an empty value or one containing '|'")
        if len(set(values)) != len(values):
            raise ValidationError(f"Factor {name} has duplicate values")
        factors.append({"name": name, "values": values})
    return factors


def normalize_design(data):
    """Validate a design mapping and return it with defaults and types applied.

    Raises ``ValidationError`` before anything touches the database.
    """
    randomization_type = data.get("randomization_type") or "block"
    if randomization_type not in RANDOMIZATION_TYPES:
        raise ValidationError(f"Unsupported randomization type: {randomization_type}")

    blinding_level = data.get("blinding_level") or "double_blind"
    if blinding_level not in BLINDING_LEVELS:
        raise ValidationError(f"Unsupported blinding level: {blinding_level}")

    block_size = _positive_int(_default(data, "block_size", 4), "block_size")
    block_size_varied = _default(data, "block_size_varied", False)
    if not isinstance(block_size_varied, bool):
        raise ValidationError("block_size_varied must be true or false")
    block_sizes_list = _default(data, "block_sizes_list", [])
    if not isinstance(block_sizes_list, list):
        raise ValidationError("block_sizes_list must be a list")
    block_sizes_list = [_positive_int(size, "block_sizes_list entry") for size in block_sizes_list]

    factors = _parse_factors(data.get("stratification_factors"))
    if randomization_type == "stratified" and not factors:
        raise ValidationError("Stratified randomization requires at least one stratification factor")

    return {
        "name": data.get("name"),
        "description": data.get("description"),
        "randomization_type": randomization_type,
        "blinding_level": blinding_level,
        "block_size": block_size,
        "block_size_varied": block_size_varied,
        "block_sizes_list": block_sizes_list,
        "ratios": _parse_ratios(data.get("allocation_ratios")),
        "factors": factors if randomization_type == "stratified" else [],
        "group_class_id": data.get("group_class_id"),
        "total_slots": _positive_int(_default(data, "total_slots", 100), "total_slots"),
    }


def design_of(config):
    """List-builder view of a stored config."""
    return {
        "randomization_type": config.randomization_type,
        "ratios": config.ratios,
        "block_size": config.block_size,
        "block_size_varied": config.block_size_varied,
        "block_sizes": config.block_sizes,
        "factors": config.factors if config.randomization_type == "stratified" else [],
        "total_slots": config.total_slots,
    }


def builder_design(design):
    """List-builder view of a normalized (not persisted) design."""
    return {
        "randomization_type": design["randomization_type"],
        "ratios": design["ratios"],
        "block_size": design["block_size"],
        "block_size_varied": design["block_size_varied"],
        "block_sizes": design["block_sizes_list"] or [design["block_size"]],
        "factors": design["factors"],
        "total_slots": design["total_slots"],
    }


def _column_values(design):
    return {
        "name": design["name"],
        "description": design["description"],
        "randomization_type": design["randomization_type"],
        "blinding_level": design["blinding_level"],
        "block_size": design["block_size"],
        "block_size_varied": design["block_size_varied"],
        "block_sizes_list": json.dumps(design["block_sizes_list"]) if design["block_sizes_list"] else None,
        "allocation_ratios": json.dumps({str(gid): r for gid, r in design["ratios"].items()}),
        "stratification_factors": json.dumps(design["factors"]) if design["factors"] else None,
        "group_class_id": design["group_class_id"],
        "total_slots": design["total_slots"],
    }


class ConfigStore:

    def __init__(self, session, audit):
        self.session = session
        self.audit = audit

    def get(self, config_id, lock=False):
        config = self.session.get(RandomizationConfig, config_id, with_for_update=lock or None)
        if not config:
            raise NotFoundError("Configuration not found")
        return config

    def get_for_study(self, study_id):
        return self.session.scalars(
            select(RandomizationConfig)
            .where(RandomizationConfig.study_id == study_id)
            .order_by(RandomizationConfig.timestamp_created.desc(), RandomizationConfig.id.desc())
            .limit(1)
        ).first()

    def get_active(self, study_id):
        return self.session.scalars(
            select(RandomizationConfig)
            .where(RandomizationConfig.study_id == study_id, RandomizationConfig.is_active.is_(True))
        ).first()

    def _check_study_references(self, study_id, design):
        arm_ids = set(self.session.scalars(
            select(TreatmentArm.id).where(TreatmentArm.study_id == study_id)
        ))
        unknown = [gid for gid in design["ratios"] if gid not in arm_ids]
        if unknown:
            raise ValidationError(
                "Treatment groups do not belong to this study: " + ", ".join(str(g) for g in unknown)
            )
        if design["group_class_id"] is not None:
            group_class = self.session.get(TreatmentArmClass, design["group_class_id"])
            if not group_class or group_class.study_id != study_id:
                raise ValidationError("Group class does not belong to this study")

    def create(self, data, user_id):
        if not data.get("study_id") or not data.get("name"):
            raise ValidationError("study_id and name are required")
        design = normalize_design(data)

        seed = data.get("seed")
        if seed is not None and not _HEX_SEED.match(str(seed)):
            raise ValidationError("seed must be a hex string of at most 128 characters")

        study = self.session.get(Study, data["study_id"])
        if not study:
            raise NotFoundError("Study not found")
        self._check_study_references(study.id, design)

        config = RandomizationConfig(
            study_id=study.id,
            seed=str(seed) if seed is not None else secrets.token_hex(32),
            is_active=False,
            is_locked=False,
            created_by=user_id,
            **_column_values(design)
        )
        self.session.add(config)
        self.session.flush()

        self.audit.record(user_id, "randomization_config", config.id, "Randomization Config Created")
        logger.info("Randomization config saved: config_id=%s study_id=%s", config.id, study.id)
        return config

    def update(self, config_id, updates, user_id):
        if not updates:
            raise ValidationError("No fields to update")
        rejected = sorted(set(updates) - set(UPDATABLE_COLUMNS))
        if rejected:
            raise ValidationError("Fields cannot be updated: " + ", ".join(rejected))

        config = self.get(config_id, lock=True)
        if config.is_locked:
            raise StateError("Configuration is locked and cannot be modified")

        merged = config.to_dict()
        merged.update(updates)
        design = normalize_design(merged)
        if not design["name"]:
            raise ValidationError("name is required")
        self._check_study_references(config.study_id, design)

        before = config.to_dict()
        values = _column_values(design)
        for key in updates:
            setattr(config, UPDATABLE_COLUMNS[key].key, values[key])

        # the draft list no longer matches the design
        discarded = self.session.execute(
            SealedListEntry.__table__.delete().where(
                SealedListEntry.config_id == config.id,
                SealedListEntry.is_used.is_(False)
            )
        ).rowcount
        self.session.flush()

        self.audit.record(
            user_id, "randomization_config", config.id, "Randomization Config Updated",
            old_value={key: before.get(key) for key in updates},
            new_value={key: config.to_dict().get(key) for key in updates}
        )
        logger.info("Randomization config updated: config_id=%s fields=%s discarded_entries=%s",
                    config.id, ",".join(sorted(updates)), discarded)
        return config

    def activate(self, config_id, user_id):
        config = self.get(config_id, lock=True)
        if config.is_active:
            raise StateError("Configuration is already active")

        entries = self.session.scalar(
            select(func.count()).select_from(SealedListEntry).where(SealedListEntry.config_id == config.id)
        )
        if not entries:
            raise StateError("Cannot activate: No randomization list generated. Generate the list first.")

        self.session.execute(
            update(RandomizationConfig)
            .where(
                RandomizationConfig.study_id == config.study_id,
                RandomizationConfig.id != config.id,
                RandomizationConfig.is_active.is_(True)
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        self.session.flush()

        config.is_active = True
        config.is_locked = True
        self.session.flush()

        self.audit.record(user_id, "randomization_config", config.id, "Randomization Scheme Activated")
        logger.info("Randomization config activated: config_id=%s study_id=%s", config.id, config.study_id)
        return config
