from sqlalchemy import create_engine, Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime

Base = declarative_base()

# Database Models
class LocalStorageEntry(Base):
    """
    Shared key/value store.

    The table is shared with other applications on the same store, so every
    writer namespaces its keys with a prefix.
    """
    __tablename__ = "codecheckout_local_storage"

    key = Column(String(512), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

def create_session_factory(database_url: str) -> sessionmaker:
    """
    Create a session factory bound to `database_url` and make sure the
    shared table exists.
    """
    engine = create_engine(database_url)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
