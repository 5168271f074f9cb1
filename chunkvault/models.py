from datetime import datetime
from sqlalchemy import (
    BigInteger, Column, DateTime, Float, ForeignKey, Integer, String, Text
)
from sqlalchemy.orm import declarative_base, relationship


Base = declarative_base()


class ChunkRecord(Base):
    """Stored chunk and its reference count"""
    __tablename__ = 'chunks'

    digest = Column(String(64), primary_key=True)  # SHA-256 of plaintext
    location = Column(String(255), nullable=False)  # Relative to repository root
    size = Column(BigInteger, nullable=False)  # Plaintext bytes
    stored_size = Column(BigInteger, nullable=False)  # Bytes on disk
    compression = Column(String(20), nullable=False)
    refcount = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<ChunkRecord {self.digest[:12]} refs={self.refcount}>'


class SnapshotRecord(Base):
    """Committed snapshot metadata"""
    __tablename__ = 'snapshots'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, index=True)  # Naive UTC
    parent_id = Column(String(64))
    hostname = Column(String(255), nullable=False, default='')
    paths = Column(Text, nullable=False, default='[]')  # JSON list of source patterns
    file_count = Column(Integer, nullable=False, default=0)
    total_size = Column(BigInteger, nullable=False, default=0)

    # Relationship
    files = relationship(
        'FileRecord',
        back_populates='snapshot',
        cascade='all, delete-orphan',
        order_by='FileRecord.path'
    )

    def __repr__(self):
        return f'<SnapshotRecord {self.id[:8]} files={self.file_count}>'


class FileRecord(Base):
    """File entry belonging to a snapshot"""
    __tablename__ = 'files'

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_seq = Column(Integer, ForeignKey('snapshots.seq', ondelete='CASCADE'), nullable=False, index=True)
    path = Column(Text, nullable=False)
    mode = Column(Integer, nullable=False)
    size = Column(BigInteger, nullable=False)
    mtime = Column(Float)

    # Relationships
    snapshot = relationship('SnapshotRecord', back_populates='files')
    chunks = relationship(
        'FileChunkRecord',
        back_populates='file',
        cascade='all, delete-orphan',
        order_by='FileChunkRecord.position'
    )

    def __repr__(self):
        return f'<FileRecord {self.path} size={self.size}>'


class FileChunkRecord(Base):
    """Ordered link between a file entry and the chunks holding its content"""
    __tablename__ = 'file_chunks'

    file_id = Column(Integer, ForeignKey('files.id', ondelete='CASCADE'), primary_key=True)
    position = Column(Integer, primary_key=True)
    digest = Column(String(64), ForeignKey('chunks.digest'), nullable=False, index=True)
    size = Column(BigInteger, nullable=False)

    # Relationship
    file = relationship('FileRecord', back_populates='chunks')

    def __repr__(self):
        return f'<FileChunkRecord file={self.file_id} pos={self.position}>'
