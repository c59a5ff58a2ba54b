"""Search Cluster Reconciler (SCR).

Control loop for clustered search services running on a container
orchestration platform:
 - translates a declared ClusterSpec into pods and services
 - watches the cluster and everything it owns
 - converges actual resources toward the declaration, idempotently
 - self-heals after manual deletion, crashes and partial failures

The controller keeps no state of its own; every pass re-derives from the
platform.
"""
