import fastapi
import serde
from fastapi import APIRouter

from gitmount.filesystem.node_tree import NodeTree
from gitmount.gitsync.manager import SyncManager


class APIHandler:
    """Control endpoints for a running mount."""
    sync_manager: SyncManager
    tree: NodeTree

    def __init__(self, sync_manager: SyncManager, tree: NodeTree):
        self.router = APIRouter()
        self.sync_manager = sync_manager
        self.tree = tree
        self.router.add_api_route("/healthcheck", self.healthcheck, methods=["GET"])
        self.router.add_api_route("/status", self.status, methods=["GET"])
        self.router.add_api_route("/sync", self.sync, methods=["POST"])

    async def healthcheck(self) -> str:
        return "ok"

    async def status(self) -> dict:
        result = serde.to_dict(self.sync_manager.status())
        result["dirty_files"] = len(self.tree.dirty_files())
        return result

    async def sync(self) -> dict:
        # Buffered writes only reach the working tree on flush
        flushed = await self.tree.flush_all()
        ok = await self.sync_manager.sync_now()
        return {"flushed": flushed, "synced": ok, "status": serde.to_dict(self.sync_manager.status())}


def create_app(handler: APIHandler) -> fastapi.FastAPI:
    app = fastapi.FastAPI(title="gitmount")
    app.include_router(handler.router)
    return app
