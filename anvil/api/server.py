"""HTTP adapter exposing a WorktreeManager (and optional MergeQueue) over FastAPI."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from anvil.core.exceptions import (
    AnvilError,
    GitTimeoutError,
    InvalidAgentIdError,
    MergeLockTimeout,
    PreconditionError,
    QueueEntryNotFoundError,
    WorkspaceNotFoundError,
)
from anvil.core.worktree_manager import WorktreeManager
from anvil.queue.merge_queue import MergeQueue

logger = logging.getLogger(__name__)


# Request/Response Models
class CreateWorktreeRequest(BaseModel):
    """Request model for creating a workspace."""

    agent_id: str = Field(..., description="Agent that will own the workspace")


class WorkspaceResponse(BaseModel):
    agent_id: str
    branch_name: str
    worktree_path: str
    ahead: int = 0
    behind: int = 0


class OutcomeResponse(BaseModel):
    """Result of a merge or sync."""

    success: bool
    message: str
    conflicting_paths: List[str] = Field(default_factory=list)
    operation: str
    commits_merged: int = 0
    merge_commit_sha: Optional[str] = None


class TrunkHealthResponse(BaseModel):
    clean: bool
    branch: Optional[str]
    merge_in_progress: bool
    status: str
    tip: Optional[str] = None
    interrupted_operations: int = 0
    healthy: bool


class CommitRequest(BaseModel):
    message: str = Field(..., min_length=1, description="Commit message")


class EnqueueRequest(BaseModel):
    agent_id: str


class ReorderRequest(BaseModel):
    position: int = Field(..., ge=0)


def _status_code_for(exc: AnvilError) -> int:
    if isinstance(exc, GitTimeoutError):
        return 504
    if isinstance(exc, MergeLockTimeout):
        return 503
    if isinstance(exc, InvalidAgentIdError):
        return 400
    if isinstance(exc, (WorkspaceNotFoundError, QueueEntryNotFoundError)):
        return 404
    if isinstance(exc, PreconditionError):
        return 409
    return 500


def create_worktree_routes(manager: WorktreeManager) -> APIRouter:
    """Routes for the trunk and agent workspaces."""
    router = APIRouter(tags=["Worktrees"])

    @router.post("/repo/init")
    def init_repo():
        """Create the trunk repository if needed."""
        manager.init_repo()
        return {"initialized": True, "repo_path": str(manager.repo_path)}

    @router.get("/repo")
    def get_repo():
        return {
            "repo_path": str(manager.repo_path),
            "has_repo": manager.has_repo(),
            "base_branch": manager.base_branch,
        }

    @router.get("/repo/status", response_model=TrunkHealthResponse)
    def get_trunk_health():
        """Post-crash check: is the trunk clean and on the base branch?"""
        return manager.check_trunk().to_dict()

    @router.post("/repo/recover", response_model=TrunkHealthResponse)
    def recover_trunk():
        return manager.recover_trunk().to_dict()

    @router.get("/repo/history")
    def get_history(agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return manager.history(agent_id)

    @router.post("/worktrees", response_model=WorkspaceResponse, status_code=201)
    def create_worktree(request: CreateWorktreeRequest):
        logger.info(f"[API] Creating workspace for {request.agent_id}")
        return manager.create_worktree(request.agent_id).to_dict()

    @router.get("/worktrees", response_model=List[WorkspaceResponse])
    def list_worktrees():
        return [w.to_dict() for w in manager.list_worktrees()]

    @router.get("/worktrees/{agent_id}", response_model=WorkspaceResponse)
    def get_worktree(agent_id: str):
        workspace = manager.get_worktree(agent_id)
        if workspace is None:
            raise HTTPException(status_code=404, detail=f"No workspace for agent {agent_id}")
        return workspace.to_dict()

    @router.delete("/worktrees/{agent_id}")
    def destroy_worktree(agent_id: str):
        manager.destroy_worktree(agent_id)
        return {"agent_id": agent_id, "destroyed": True}

    @router.post("/worktrees/{agent_id}/merge", response_model=OutcomeResponse)
    def merge_worktree(agent_id: str):
        """Merge the agent's branch into the trunk. Conflicts return success=false."""
        return manager.merge_branch(agent_id).to_dict()

    @router.post("/worktrees/{agent_id}/sync", response_model=OutcomeResponse)
    def sync_worktree(agent_id: str):
        return manager.update_worktree(agent_id).to_dict()

    @router.get("/worktrees/{agent_id}/diff")
    def get_diff(agent_id: str):
        return {"agent_id": agent_id, "diff": manager.get_branch_diff(agent_id)}

    @router.get("/worktrees/{agent_id}/status")
    def get_status(agent_id: str):
        return {"agent_id": agent_id, "status": manager.get_branch_status(agent_id)}

    @router.post("/worktrees/{agent_id}/commit")
    def commit_worktree(agent_id: str, request: CommitRequest):
        workspace = manager.get_worktree(agent_id)
        if workspace is None:
            raise HTTPException(status_code=404, detail=f"No workspace for agent {agent_id}")
        committed = manager.commit(workspace.worktree_path, request.message)
        return {"agent_id": agent_id, "committed": committed}

    return router


def create_queue_routes(merge_queue: MergeQueue) -> APIRouter:
    """Routes for the merge queue."""
    router = APIRouter(prefix="/queue", tags=["Merge Queue"])

    @router.get("")
    def get_queue():
        return merge_queue.get_queue()

    @router.post("", status_code=201)
    def enqueue(request: EnqueueRequest):
        return merge_queue.enqueue(request.agent_id)

    @router.delete("/{agent_id}")
    def dequeue(agent_id: str):
        if not merge_queue.remove(agent_id):
            raise HTTPException(status_code=404, detail=f"{agent_id} is not in the merge queue")
        return {"agent_id": agent_id, "removed": True}

    @router.post("/{agent_id}/reorder")
    def reorder(agent_id: str, request: ReorderRequest):
        if not merge_queue.reorder(agent_id, request.position):
            raise HTTPException(status_code=404, detail=f"{agent_id} is not in the merge queue")
        return merge_queue.get_entry(agent_id)

    @router.post("/{agent_id}/requeue")
    def requeue(agent_id: str):
        return merge_queue.requeue(agent_id)

    @router.post("/process")
    def process_next():
        """Run one queued entry. ``processed`` is null when nothing ran."""
        return {"processed": merge_queue.process_next()}

    @router.post("/run")
    def run_pending():
        return {"processed": merge_queue.run_pending()}

    return router


def create_app(manager: WorktreeManager, merge_queue: Optional[MergeQueue] = None) -> FastAPI:
    """Build the FastAPI application around an existing manager."""
    app = FastAPI(
        title="Anvil",
        description="Git worktree orchestration for concurrent agents",
        version="0.1.0",
    )

    @app.exception_handler(AnvilError)
    async def anvil_error_handler(request: Request, exc: AnvilError):
        status_code = _status_code_for(exc)
        if status_code >= 500:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    app.include_router(create_worktree_routes(manager))
    if merge_queue is not None:
        app.include_router(create_queue_routes(merge_queue))

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "has_repo": manager.has_repo()}

    return app
