# models.py
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import json

db = SQLAlchemy()

class Users(db.Model):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(20), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    title = db.Column(db.String(100))

class Study(db.Model):
    __tablename__ = 'study'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    protocol_number = db.Column(db.String(100))
    irb_number = db.Column(db.String(100))
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)
    timestamp_updated = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    treatment_arms = db.relationship('TreatmentArm', backref='study', cascade="all, delete", lazy=True)
    group_classes = db.relationship('TreatmentArmClass', backref='study', cascade="all, delete", lazy=True)

class TreatmentArmClass(db.Model):
    """Groups the arms a subject can be assigned to (one assignment per class)."""
    __tablename__ = 'treatment_arm_class'
    id = db.Column(db.Integer, primary_key=True)
    study_id = db.Column(db.Integer, db.ForeignKey('study.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)

class TreatmentArm(db.Model):
    __tablename__ = 'treatment_arm'
    id = db.Column(db.Integer, primary_key=True)
    study_id = db.Column(db.Integer, db.ForeignKey('study.id'), nullable=False)
    group_class_id = db.Column(db.Integer, db.ForeignKey('treatment_arm_class.id'), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)

class StudySubject(db.Model):
    __tablename__ = "study_subject"
    id = db.Column(db.Integer, primary_key=True)
    study_id = db.Column(db.Integer, db.ForeignKey('study.id'), nullable=False)
    label = db.Column(db.String(100), nullable=False)
    sex = db.Column(db.String(10))
    dob = db.Column(db.Date)
    status = db.Column(db.String(20), nullable=False, default="available")  # available | removed
    entered_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)
    timestamp_updated = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class SubjectGroupAssignment(db.Model):
    __tablename__ = 'subject_group_assignment'
    __table_args__ = (
        db.UniqueConstraint('subject_id', 'group_class_id', name='uq_assignment_subject_class'),
    )
    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('study_subject.id'), nullable=False)
    treatment_arm_id = db.Column(db.Integer, db.ForeignKey('treatment_arm.id'), nullable=False)
    group_class_id = db.Column(db.Integer, db.ForeignKey('treatment_arm_class.id'), nullable=True)
    notes = db.Column(db.String(255))
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    updated_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)
    timestamp_updated = db.Column(db.DateTime, onupdate=datetime.utcnow)

    treatment_arm = db.relationship('TreatmentArm')

class AuditLogEvent(db.Model):
    __tablename__ = 'audit_log_event'
    id = db.Column(db.Integer, primary_key=True)
    audit_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    entity_type = db.Column(db.String(100), nullable=False)
    entity_id = db.Column(db.Integer)
    description = db.Column(db.Text, nullable=False)
    old_value = db.Column(db.Text)
    new_value = db.Column(db.Text)

class RandomizationConfig(db.Model):
    __tablename__ = 'randomization_config'
    __table_args__ = (
        # at most one active design per study
        db.Index(
            'uq_randomization_config_active_study', 'study_id',
            unique=True,
            sqlite_where=db.text('is_active'),
            postgresql_where=db.text('is_active'),
        ),
    )
    id = db.Column(db.Integer, primary_key=True)
    study_id = db.Column(db.Integer, db.ForeignKey('study.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    randomization_type = db.Column(db.String(50), nullable=False, default='block')  # simple, block, stratified
    blinding_level = db.Column(db.String(50), nullable=False, default='double_blind')
    block_size = db.Column(db.Integer, nullable=False, default=4)
    block_size_varied = db.Column(db.Boolean, nullable=False, default=False)
    block_sizes_list = db.Column(db.Text)  # JSON array e.g. [4, 6, 8]
    allocation_ratios = db.Column(db.Text, nullable=False)  # JSON object e.g. {"1": 1, "2": 1}
    stratification_factors = db.Column(db.Text)  # JSON array of {"name", "values"}
    group_class_id = db.Column(db.Integer, db.ForeignKey('treatment_arm_class.id'), nullable=True)
    seed = db.Column(db.String(128), nullable=False)
    total_slots = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    is_locked = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)
    timestamp_updated = db.Column(db.DateTime, onupdate=datetime.utcnow)

    @property
    def ratios(self):
        """Allocation ratios keyed by integer group id, ascending."""
        raw = json.loads(self.allocation_ratios or "{}")
        return {int(gid): int(raw[gid]) for gid in sorted(raw, key=int)}

    @property
    def block_sizes(self):
        if self.block_sizes_list:
            return json.loads(self.block_sizes_list)
        return [self.block_size]

    @property
    def factors(self):
        return json.loads(self.stratification_factors) if self.stratification_factors else []

    def to_dict(self):
        return {
            "id": self.id,
            "study_id": self.study_id,
            "name": self.name,
            "description": self.description,
            "randomization_type": self.randomization_type,
            "blinding_level": self.blinding_level,
            "block_size": self.block_size,
            "block_size_varied": self.block_size_varied,
            "block_sizes_list": json.loads(self.block_sizes_list) if self.block_sizes_list else [],
            "allocation_ratios": {str(gid): ratio for gid, ratio in self.ratios.items()},
            "stratification_factors": self.factors,
            "group_class_id": self.group_class_id,
            "total_slots": self.total_slots,
            "is_active": self.is_active,
            "is_locked": self.is_locked,
            "created_by": self.created_by,
            "created": self.timestamp_created.isoformat() if self.timestamp_created else None,
            "updated": self.timestamp_updated.isoformat() if self.timestamp_updated else None
        }

class SealedListEntry(db.Model):
    __tablename__ = 'sealed_list_entry'
    __table_args__ = (
        db.UniqueConstraint('config_id', 'stratum_key', 'sequence_number', name='uq_sealed_entry_sequence'),
        db.UniqueConstraint('config_id', 'used_by_subject_id', name='uq_sealed_entry_subject'),
        db.Index('ix_sealed_entry_next', 'config_id', 'stratum_key', 'is_used', 'sequence_number'),
    )
    id = db.Column(db.Integer, primary_key=True)
    config_id = db.Column(db.Integer, db.ForeignKey('randomization_config.id'), nullable=False)
    sequence_number = db.Column(db.Integer, nullable=False)
    treatment_arm_id = db.Column(db.Integer, db.ForeignKey('treatment_arm.id'), nullable=False)
    stratum_key = db.Column(db.String(500), nullable=False, default='default')
    block_number = db.Column(db.Integer, nullable=False, default=0)
    is_used = db.Column(db.Boolean, nullable=False, default=False)
    used_by_subject_id = db.Column(db.Integer, db.ForeignKey('study_subject.id'), nullable=True, index=True)
    used_at = db.Column(db.DateTime)
    used_by_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    randomization_number = db.Column(db.String(50))
    timestamp_created = db.Column(db.DateTime, default=datetime.utcnow)
