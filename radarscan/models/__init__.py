"""ORM model registry - import all models so Alembic autogenerate can detect them."""

from radarscan.models.scan_session import ScanSessionRecord

__all__ = ["ScanSessionRecord"]
