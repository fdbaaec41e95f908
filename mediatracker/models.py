from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class TrackedItem(Base):
    __tablename__ = "tracked_items"
    __table_args__ = (UniqueConstraint("catalog_id", "media_type", name="uq_tracked_catalog_media"),)

    id = Column(Integer, primary_key=True, index=True)
    catalog_id = Column(String(100), nullable=False, index=True)
    media_type = Column(String(20), nullable=False)
    title = Column(String(255), nullable=False, index=True)
    poster_path = Column(String(255), nullable=True)
    status = Column(String(50), nullable=False, default="plan_to_watch")
    is_favorite = Column(Boolean, default=False)
    added_at = Column(DateTime(timezone=True), server_default=func.now())
    watched_at = Column(DateTime(timezone=True), nullable=True)
    progress = Column(Integer, default=0)
    total = Column(Integer, default=0)

    episodes = relationship(
        "WatchedEpisodeRow",
        back_populates="tracked_item",
        cascade="all, delete-orphan",
        order_by="WatchedEpisodeRow.id",
    )


class WatchedEpisodeRow(Base):
    __tablename__ = "watched_episodes"
    __table_args__ = (
        UniqueConstraint("tracked_item_id", "season_number", "episode_number", name="uq_watched_episode"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tracked_item_id = Column(Integer, ForeignKey("tracked_items.id"), nullable=False, index=True)
    season_number = Column(Integer, nullable=False)
    episode_number = Column(Integer, nullable=False)
    episode_id = Column(String(100), nullable=True)
    watched_at = Column(DateTime(timezone=True), nullable=False)

    tracked_item = relationship("TrackedItem", back_populates="episodes")


class ShowStructureCache(Base):
    __tablename__ = "show_structure_cache"

    catalog_id = Column(String(100), primary_key=True)
    payload = Column(Text, nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
