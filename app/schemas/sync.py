from app.schemas.common import CamelModel


class SyncReport(CamelModel):
    skipped: bool = False
    seen: int = 0
    created: int = 0
    passwords_updated: int = 0
    roles_assigned: int = 0
    links_created: int = 0
    identities_recorded: int = 0
    failed: int = 0
