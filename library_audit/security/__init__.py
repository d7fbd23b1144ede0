"""
Threat detection and security monitoring
"""

from .geo import GeoLocator, haversine_distance
from .intrusion import IntrusionAggregator
from .monitor import SecurityMonitor, load_threat_rules
from .patterns import InjectionDetector
from .recorder import SecurityEventRecorder
from .threat_analyzer import ThreatAnalyzer

__all__ = [
    "GeoLocator",
    "haversine_distance",
    "IntrusionAggregator",
    "SecurityMonitor",
    "load_threat_rules",
    "InjectionDetector",
    "SecurityEventRecorder",
    "ThreatAnalyzer"
]
