"""CachedArtifact ORM model.

Each record remembers a successful, verified fetch of one artifact so a
later fetch without an expected digest can still prove the local file is
the one that was downloaded.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from netboot_imagegen.db import Base


class CachedArtifact(Base):
    """ORM model for the artifact cache ledger.

    Attributes:
        id: Primary key.
        local_path: Absolute local path of the artifact (unique).
        locator: Source locator the artifact was fetched from.
        size_bytes: Size of the verified file.
        sha256: SHA-256 digest recorded after the fetch.
        fetched_at: Timestamp of the download.
        verified_at: Timestamp of the most recent digest check.
    """

    __tablename__ = "cached_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    local_path: Mapped[str] = mapped_column(String(1000), nullable=False, unique=True)
    locator: Mapped[str] = mapped_column(String(2000), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of CachedArtifact."""
        return (
            f"<CachedArtifact(id={self.id}, local_path='{self.local_path}', "
            f"sha256='{self.sha256[:16]}')>"
        )


__all__ = ["CachedArtifact"]
