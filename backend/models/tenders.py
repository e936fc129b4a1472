# models/tenders.py

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from db.base import Base


class Tender(Base):
    __tablename__ = "tenders"

    id = Column(Integer, primary_key=True, index=True)
    external_id = Column(String, nullable=False, index=True)
    source = Column(String, nullable=False, index=True)  # gem / non_gem
    upload_id = Column(Integer, ForeignKey("excel_uploads.id"), nullable=True, index=True)

    title = Column(Text)
    department = Column(Text)
    organization = Column(Text)
    location = Column(Text)
    similar_category = Column(Text)

    estimated_value = Column(Numeric(15, 2))
    emd_amount = Column(Numeric(15, 2))
    turnover_requirement = Column(Numeric(15, 4))  # crores

    publish_date = Column(DateTime)
    submission_deadline = Column(DateTime, index=True)
    opening_date = Column(DateTime)

    eligibility_criteria = Column(Text)
    checklist = Column(Text)
    # exemption flags as given in the sheet, before any text analysis
    msme_exemption_flag = Column(Boolean, nullable=False, default=False)
    startup_exemption_flag = Column(Boolean, nullable=False, default=False)

    match_percentage = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="manual_review", index=True)
    tags = Column(JSON, nullable=False, default=list)
    is_msme_exempted = Column(Boolean, nullable=False, default=False)
    is_startup_exempted = Column(Boolean, nullable=False, default=False)
    not_relevant_keyword = Column(String)

    is_missed = Column(Boolean, nullable=False, default=False)
    previous_status = Column(String)
    missed_at = Column(DateTime)

    is_manual_override = Column(Boolean, nullable=False, default=False)
    override_status = Column(String)
    override_reason = Column(String)
    override_comment = Column(Text)
    override_by = Column(String)
    override_at = Column(DateTime)

    # override carried by the superseded version, kept for reference only
    previous_override_status = Column(String)
    previous_override_reason = Column(String)
    previous_override_comment = Column(Text)

    is_corrigendum = Column(Boolean, nullable=False, default=False)
    original_tender_id = Column(Integer, ForeignKey("tenders.id"), nullable=True)
    is_latest = Column(Boolean, nullable=False, default=True, index=True)

    raw_data = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    changes = relationship(
        "CorrigendumChange",
        foreign_keys="CorrigendumChange.tender_id",
        order_by="CorrigendumChange.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_tenders_identity_latest", "external_id", "source", "is_latest"),
    )

    @property
    def effective_status(self) -> str:
        if self.is_manual_override and self.override_status:
            return self.override_status
        return self.status


class CorrigendumChange(Base):
    __tablename__ = "corrigendum_changes"

    id = Column(Integer, primary_key=True, index=True)
    tender_id = Column(Integer, ForeignKey("tenders.id"), nullable=False, index=True)
    original_tender_id = Column(Integer, ForeignKey("tenders.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    field_name = Column(String, nullable=False)
    old_value = Column(Text)
    new_value = Column(Text)
    detected_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
