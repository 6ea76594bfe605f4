from sqlalchemy import Column, Integer, String, Text
from imagen.db.database import Base


class MediaEntry(Base):
    __tablename__ = "media_entries"

    uid = Column(Integer, primary_key=True, autoincrement=False)
    timestamp = Column(String, nullable=False)
    folder = Column(String, nullable=False, default="")
    type = Column(String, nullable=True)
    name = Column(String, nullable=True)
    # Full generation data as JSON, including the columns above
    data = Column(Text, nullable=False)


class Folder(Base):
    __tablename__ = "folders"

    uid = Column(String, primary_key=True)
    label = Column(String, nullable=False)


class CatalogSetting(Base):
    __tablename__ = "catalog_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
