"""RedLead background job, cache and resilience services."""

__version__ = "1.0.0"
