from datetime import datetime
from sqlalchemy import Column, String, Integer, Text, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from scene_import.database import Base


class Scene(Base):
    """
    Private scene created from a committed import draft.
    Only the columns the import flow writes are modelled here.
    """
    __tablename__ = "scenes"

    id            = Column(String(64), primary_key=True)
    title         = Column(String(512), nullable=False)
    author        = Column(String(256), nullable=True)
    is_private    = Column(Boolean, nullable=False, default=True)
    owner_user_id = Column(String(128), nullable=False, index=True)
    created_at    = Column(DateTime, default=datetime.utcnow, nullable=False)

    characters = relationship("SceneCharacter", back_populates="scene", cascade="all, delete-orphan")
    lines      = relationship(
        "SceneLine", back_populates="scene", cascade="all, delete-orphan", order_by="SceneLine.order",
    )


class SceneCharacter(Base):
    __tablename__ = "characters"

    id       = Column(Integer, primary_key=True, autoincrement=True)
    scene_id = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False)
    name     = Column(String(256), nullable=False)

    scene = relationship("Scene", back_populates="characters")


class SceneLine(Base):
    __tablename__ = "lines"

    id           = Column(Integer, primary_key=True, autoincrement=True)
    scene_id     = Column(String(64), ForeignKey("scenes.id", ondelete="CASCADE"), nullable=False)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    text         = Column(Text, nullable=False)
    order        = Column(Integer, nullable=False)

    scene     = relationship("Scene", back_populates="lines")
    character = relationship("SceneCharacter")
