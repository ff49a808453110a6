"""Farmerbot - power manager for the nodes of a compute farm.

Modules:
- capacity: resource quantities per node
- state: node records and the in-memory registry
- power: power-on/off guards and the periodic scaling tick
- bot: orchestrator owning the registry, policy and power manager
- main: operator HTTP surface and process entry point
"""

__version__ = "0.1.0"
