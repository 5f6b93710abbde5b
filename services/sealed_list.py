# services/sealed_list.py
"""Persisted per-stratum queues of pre-generated assignments."""
import logging
from datetime import datetime

from sqlalchemy import case, func, insert, select, update
from sqlalchemy.exc import IntegrityError

from models import SealedListEntry, TreatmentArm
from services import list_builder
from services.config_store import design_of
from services.errors import ExhaustionError, StateError
from services.seeded_prng import SeededPRNG

logger = logging.getLogger(__name__)


def randomization_number(config_id, ordinal):
    return f"RND-{config_id:03d}-{ordinal:05d}"


class SealedListStore:

    def __init__(self, session, audit):
        self.session = session
        self.audit = audit

    def generate(self, config, user_id):
        """(Re)generate the sealed list of an unlocked config from its seed."""
        if config.is_locked:
            raise StateError("Configuration is locked. List already generated.")

        self.session.execute(
            SealedListEntry.__table__.delete().where(
                SealedListEntry.config_id == config.id,
                SealedListEntry.is_used.is_(False)
            )
        )

        lists = list_builder.build_list(SeededPRNG(config.seed), design_of(config))

        rows = []
        now = datetime.utcnow()
        for stratum_key, slots in lists.items():
            for sequence_number, slot in enumerate(slots, start=1):
                rows.append({
                    "config_id": config.id,
                    "sequence_number": sequence_number,
                    "treatment_arm_id": slot.group_id,
                    "stratum_key": stratum_key,
                    "block_number": slot.block_number,
                    "is_used": False,
                    "randomization_number": randomization_number(config.id, len(rows) + 1),
                    "timestamp_created": now,
                })
        self.session.execute(insert(SealedListEntry), rows)

        self.audit.record(
            user_id, "sealed_list", config.id, "Randomization List Generated",
            new_value=f"{len(rows)} entries across {len(lists)} strata"
        )
        logger.info("Randomization list generated: config_id=%s entries=%s strata=%s",
                    config.id, len(rows), len(lists))
        return {"total_entries": len(rows), "strata": list(lists)}

    def _next_unused(self, config_id, stratum_key):
        return self.session.scalars(
            select(SealedListEntry)
            .where(
                SealedListEntry.config_id == config_id,
                SealedListEntry.stratum_key == stratum_key,
                SealedListEntry.is_used.is_(False)
            )
            .order_by(SealedListEntry.sequence_number)
            .limit(1)
            .with_for_update(skip_locked=True)
        ).first()

    def pop_next(self, config_id, stratum_key, subject_id, user_id):
        """Claim the lowest unused entry of a stratum for ``subject_id``.

        Rows locked by other in-flight transactions are skipped. The claim
        itself is conditional on the row still being unused, so a lost race
        just moves on to the next lowest entry.
        """
        while True:
            entry = self._next_unused(config_id, stratum_key)
            if entry is None:
                raise ExhaustionError(
                    f"No available randomization slots for stratum: {stratum_key}. The list may be exhausted."
                )

            try:
                claimed = self.session.execute(
                    update(SealedListEntry)
                    .where(SealedListEntry.id == entry.id, SealedListEntry.is_used.is_(False))
                    .values(
                        is_used=True,
                        used_by_subject_id=subject_id,
                        used_at=datetime.utcnow(),
                        used_by_user_id=user_id
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
            except IntegrityError:
                # uq_sealed_entry_subject: another transaction already claimed
                # an entry of this config for the subject
                raise StateError("Subject is already randomized")
            self.session.expire(entry)
            if claimed == 1:
                return entry
            logger.debug("Sealed entry claimed concurrently, retrying: config_id=%s stratum=%s",
                         config_id, stratum_key)

    def subject_entry(self, config_id, subject_id):
        return self.session.scalars(
            select(SealedListEntry).where(
                SealedListEntry.config_id == config_id,
                SealedListEntry.used_by_subject_id == subject_id,
                SealedListEntry.is_used.is_(True)
            )
        ).first()

    def count(self, config_id):
        return self.session.scalar(
            select(func.count()).select_from(SealedListEntry).where(SealedListEntry.config_id == config_id)
        )

    def stats(self, config_id):
        used_count = func.count(case((SealedListEntry.is_used.is_(True), 1)))

        by_stratum = self.session.execute(
            select(SealedListEntry.stratum_key, func.count().label("total"), used_count.label("used"))
            .where(SealedListEntry.config_id == config_id)
            .group_by(SealedListEntry.stratum_key)
            .order_by(SealedListEntry.stratum_key)
        ).all()

        by_group = self.session.execute(
            select(
                SealedListEntry.treatment_arm_id,
                TreatmentArm.name,
                func.count().label("total"),
                used_count.label("used")
            )
            .join(TreatmentArm, TreatmentArm.id == SealedListEntry.treatment_arm_id, isouter=True)
            .where(SealedListEntry.config_id == config_id)
            .group_by(SealedListEntry.treatment_arm_id, TreatmentArm.name)
            .order_by(SealedListEntry.treatment_arm_id)
        ).all()

        total = sum(row.total for row in by_stratum)
        used = sum(row.used for row in by_stratum)
        return {
            "total": total,
            "used": used,
            "available": total - used,
            "by_stratum": [
                {
                    "stratum_key": row.stratum_key,
                    "total": row.total,
                    "used": row.used,
                    "available": row.total - row.used
                } for row in by_stratum
            ],
            "by_group": [
                {
                    "group_id": row.treatment_arm_id,
                    "group_name": row.name if row.name is not None else f"Group {row.treatment_arm_id}",
                    "total": row.total,
                    "used": row.used
                } for row in by_group
            ]
        }
