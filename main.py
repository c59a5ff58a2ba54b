from __future__ import annotations

import os
import secrets
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from scr.accessor import Accessor, Store
from scr.api_models import ClusterRequest, ClusterSummary
from scr.errors import Conflict, InvariantViolation, NotFound, ScrError, Unavailable, ValidationError
from scr.manager import Manager, build_store
from scr.resources import (
    KIND_CLUSTER,
    KIND_JOB,
    KIND_POD,
    KIND_SERVICE,
    ClusterKey,
    Resource,
    pod_is_ready,
)
from scr.settings import Settings, settings
from scr.translate import validate

RESOURCE_PATHS = {"pods": KIND_POD, "services": KIND_SERVICE, "jobs": KIND_JOB}


def _http_error(e: ScrError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(
            status_code=422, detail=[{"field": p.field, "message": p.message} for p in e.problems]
        )
    if isinstance(e, InvariantViolation):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, Unavailable):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _summary(res: Resource) -> ClusterSummary:
    return ClusterSummary(
        namespace=res.namespace,
        name=res.name,
        version=str(res.spec.get("version", "")),
        phase=res.status.get("phase", "Pending"),
        desired_nodes=int(res.status.get("desiredNodes", 0)),
        ready_nodes=int(res.status.get("readyNodes", 0)),
    )


def create_app(store: Store | None = None, cfg: Settings = settings, run_controller: bool = True) -> FastAPI:
    app = FastAPI(title="Search Cluster Reconciler")
    security = HTTPBasic()
    state: dict[str, Any] = {"store": store, "manager": None}

    def accessor() -> Accessor:
        if state["store"] is None:
            state["store"] = build_store(cfg)
        return Accessor(state["store"])

    def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        user_ok = secrets.compare_digest(credentials.username, cfg.admin_user)
        pass_ok = secrets.compare_digest(credentials.password, cfg.admin_password)
        if not (user_ok and pass_ok):
            raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
        return credentials.username

    @app.on_event("startup")
    def startup() -> None:
        acc = accessor()
        if run_controller:
            state["manager"] = Manager(acc.store, cfg)
            state["manager"].start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if state["manager"] is not None:
            state["manager"].stop()
            state["manager"] = None

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        mgr = state["manager"]
        return {"status": "healthy", "controller": bool(mgr and mgr.started)}

    @app.get("/clusters", response_model=list[ClusterSummary])
    def list_clusters(acc: Accessor = Depends(accessor)) -> list[ClusterSummary]:
        try:
            return [_summary(r) for r in acc.list(KIND_CLUSTER)]
        except ScrError as e:
            raise _http_error(e) from e

    @app.put("/clusters/{namespace}/{name}")
    def apply_cluster(
        namespace: str,
        name: str,
        req: ClusterRequest,
        user: str = Depends(require_admin),
        acc: Accessor = Depends(accessor),
    ) -> dict[str, Any]:
        spec = req.to_spec(name, namespace)
        try:
            validate(spec)
            try:
                current = acc.get_cluster(spec.key)
            except NotFound:
                created = acc.create(spec.to_resource())
                acc.record_event("INFO", f"Cluster created by {user}", spec.key)
                return {"created": True, "cluster": created.to_manifest()}
            updated = current.copy()
            updated.spec = spec.to_spec_dict()
            updated = acc.update(updated)
            acc.record_event("INFO", f"Cluster spec updated by {user}", spec.key)
            return {"created": False, "cluster": updated.to_manifest()}
        except ScrError as e:
            raise _http_error(e) from e

    @app.get("/clusters/{namespace}/{name}")
    def get_cluster(namespace: str, name: str, acc: Accessor = Depends(accessor)) -> dict[str, Any]:
        try:
            return acc.get_cluster(ClusterKey(namespace, name)).to_manifest()
        except ScrError as e:
            raise _http_error(e) from e

    @app.delete("/clusters/{namespace}/{name}")
    def delete_cluster(
        namespace: str, name: str, user: str = Depends(require_admin), acc: Accessor = Depends(accessor)
    ) -> dict[str, Any]:
        key = ClusterKey(namespace, name)
        try:
            acc.delete(KIND_CLUSTER, namespace, name)
            acc.record_event("INFO", f"Cluster deleted by {user}", key)
        except ScrError as e:
            raise _http_error(e) from e
        return {"deleted": str(key)}

    @app.get("/clusters/{namespace}/{name}/resources")
    def cluster_resources(namespace: str, name: str, acc: Accessor = Depends(accessor)) -> dict[str, Any]:
        key = ClusterKey(namespace, name)
        try:
            acc.get_cluster(key)
            pods = acc.list_owned(key, KIND_POD)
            services = acc.list_owned(key, KIND_SERVICE)
            jobs = acc.list_owned(key, KIND_JOB)
        except ScrError as e:
            raise _http_error(e) from e
        return {
            "pods": [{"name": p.name, "role": p.role, "ready": pod_is_ready(p)} for p in pods],
            "services": [{"name": s.name, "role": s.role, "selector": s.spec.get("selector", {})} for s in services],
            "jobs": [{"name": j.name, "status": j.status} for j in jobs],
        }

    @app.delete("/resources/{kind}/{namespace}/{name}")
    def delete_resource(
        kind: str, namespace: str, name: str, user: str = Depends(require_admin), acc: Accessor = Depends(accessor)
    ) -> dict[str, Any]:
        """Delete one owned resource by hand; the controller is expected to bring it back."""
        if kind not in RESOURCE_PATHS:
            raise HTTPException(status_code=404, detail=f"Unknown resource kind '{kind}'")
        try:
            res = acc.get(RESOURCE_PATHS[kind], namespace, name)
            acc.delete(res.kind, namespace, name)
            acc.record_event("WARN", f"{res.kind} {name} deleted manually by {user}", res.owner_key())
        except ScrError as e:
            raise _http_error(e) from e
        return {"deleted": f"{kind}/{namespace}/{name}"}

    @app.get("/events")
    def events(limit: int = Query(50, ge=1, le=1000), acc: Accessor = Depends(accessor)) -> list[dict[str, Any]]:
        return acc.store.latest_events(limit)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("SCR_HOST", "0.0.0.0"), port=int(os.getenv("SCR_PORT", "8000")))
