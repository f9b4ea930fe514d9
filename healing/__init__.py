"""
Self-healing health monitor.

Periodically probes named subsystems, classifies their health, publishes
degradation and recovery signals, groups correlated failures into incidents
and drives bounded automatic remediation.

Entry point: healing.monitor.HealthMonitor (or get_health_monitor()).
"""

__version__ = "1.0.0"
