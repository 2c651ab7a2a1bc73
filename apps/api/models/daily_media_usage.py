"""Per-day media upload counters."""

from sqlalchemy import CheckConstraint, Column, Date, ForeignKey, Integer, String

from database import Base


class DailyMediaUsage(Base):
    """Successful uploads per user per UTC day, split by media type."""

    __tablename__ = "daily_media_usage"
    __table_args__ = (
        CheckConstraint("image_count >= 0", name="ck_daily_media_usage_image_nonnegative"),
        CheckConstraint("video_count >= 0", name="ck_daily_media_usage_video_nonnegative"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    usage_date = Column(Date, primary_key=True)
    image_count = Column(Integer, nullable=False, default=0)
    video_count = Column(Integer, nullable=False, default=0)
