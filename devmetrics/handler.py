"""
Event-driven entrypoint for DevMetrics sync runs

Invoked by a scheduler or queue with a small JSON event; no HTTP server logic.
The store handle is created per invocation and disposed before returning.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from devmetrics.jobs.sync_jobs import (
    parse_ids,
    run_installation_sync,
    run_organization_sync,
    run_repository_sync,
)
from devmetrics.runtime import Runtime, build_runtime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def lambda_handler(
    event: Optional[Dict[str, Any]],
    context: Any,
    runtime_factory: Callable[[], Runtime] = build_runtime,
) -> Dict[str, Any]:
    """
    Dispatch a sync run based on `event["action"]`.

    Expected event payloads:
    - {"action": "sync_organization", "organization_ids": [1, 2], "mode": "full"}
    - {"action": "sync_repository", "repository_ids": "7,8", "mode": "incremental"}
    - {"action": "sync_installation", "token": "...", "installation_id": 42}

    Returns:
        Dictionary with statusCode, action, and result
    """
    payload = event or {}
    action = payload.get("action", "sync_organization")
    logger.info(f"Handler invoked with action: {action}")

    runtime: Optional[Runtime] = None
    try:
        runtime = runtime_factory()
        orchestrator = runtime.orchestrator

        if action == "sync_organization":
            organization_ids = parse_ids(payload.get("organization_ids") or payload.get("organization_id"))
            if not organization_ids:
                raise ValueError("organization_ids is required")
            result: Any = asyncio.run(
                run_organization_sync(
                    orchestrator=orchestrator,
                    organization_ids=organization_ids,
                    mode=payload.get("mode"),
                    include_pull_requests=payload.get("include_pull_requests", True),
                )
            )

        elif action == "sync_repository":
            repository_ids = parse_ids(payload.get("repository_ids") or payload.get("repository_id"))
            if not repository_ids:
                raise ValueError("repository_ids is required")
            result = asyncio.run(
                run_repository_sync(
                    orchestrator=orchestrator,
                    repository_ids=repository_ids,
                    mode=payload.get("mode"),
                )
            )

        elif action == "sync_installation":
            result = asyncio.run(
                run_installation_sync(
                    orchestrator=orchestrator,
                    token=payload.get("token"),
                    installation_id=payload.get("installation_id"),
                )
            )

        else:
            raise ValueError(f"Unknown action: {action}")

        logger.info(f"Sync action {action} finished")
        return {
            "statusCode": 200,
            "action": action,
            "result": result,
        }

    except ValueError as e:
        logger.error(f"Rejected handler event: {e}")
        return {
            "statusCode": 400,
            "action": action,
            "error": str(e),
        }

    except Exception as e:
        logger.error(f"Handler execution failed: {e}", exc_info=True)
        return {
            "statusCode": 500,
            "action": action,
            "error": str(e),
        }

    finally:
        if runtime is not None:
            runtime.close()
