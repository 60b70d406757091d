"""hookrelay API routers.

- github: GitHub webhook ingestion
- linear: Linear webhook ingestion and reachability probe
- health: Queue health for orchestration
"""

from hookrelay.api.routers.github import router as github_router
from hookrelay.api.routers.health import router as health_router
from hookrelay.api.routers.linear import router as linear_router

__all__ = [
    "github_router",
    "health_router",
    "linear_router",
]
