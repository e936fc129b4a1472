from sqlalchemy import Column, DateTime, Integer, String, Text, func

from db.base import Base


class ExcelUpload(Base):
    __tablename__ = "excel_uploads"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String, nullable=False, unique=True, index=True)
    kind = Column(String, nullable=False, default="upload")
    file_name = Column(String, nullable=False)
    uploaded_by = Column(String)
    status = Column(String, nullable=False, default="queued")
    total_rows = Column(Integer, nullable=False, default=0)
    gem_count = Column(Integer, nullable=False, default=0)
    non_gem_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    new_count = Column(Integer, nullable=False, default=0)
    duplicate_count = Column(Integer, nullable=False, default=0)
    corrigendum_count = Column(Integer, nullable=False, default=0)
    message = Column(Text)
    uploaded_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(DateTime(timezone=True))
