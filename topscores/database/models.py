from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class LeaderboardNode(Base):
    """A JSON value stored at a path, versioned for optimistic transactions"""
    __tablename__ = 'leaderboard_nodes'
    
    path = Column(String(200), primary_key=True)
    value = Column(Text, nullable=True)  # JSON-encoded list of {"email", "score"} records
    version = Column(Integer, nullable=False, default=0)  # Bumped on every commit
    
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    
    def __repr__(self):
        return f"<LeaderboardNode(path='{self.path}', version={self.version})>"
