from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text, func

from db.base import Base


class CompanyCriteriaRow(Base):
    __tablename__ = "company_criteria"

    id = Column(Integer, primary_key=True, default=1)
    turnover_cr = Column(Numeric(10, 2), nullable=False, default=4)
    project_types = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    updated_by = Column(String)


class NegativeKeyword(Base):
    __tablename__ = "negative_keywords"

    id = Column(Integer, primary_key=True, index=True)
    keyword = Column(String, nullable=False, unique=True)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_by = Column(String)
