"""Runtime adapters that execute tasks in-process or inside a container sandbox.

Both adapters share one lifecycle contract (:mod:`taskplane.runtime.base`) and
talk to the execution environment only through the per-task sync files in
:mod:`taskplane.runtime.sync`.
"""
