"""
Display metadata for anomaly types and severities (labels, colors, icons).

The alerts card and history view render from these tables; every enum
member must have an entry.
"""

from alerts.detector import AnomalySeverity, AnomalyType

SEVERITY_DISPLAY: dict[AnomalySeverity, dict[str, str]] = {
    AnomalySeverity.CRITICAL: {"label": "Crítico", "color": "red", "badge": "destructive"},
    AnomalySeverity.HIGH: {"label": "Alto", "color": "orange", "badge": "secondary"},
    AnomalySeverity.MEDIUM: {"label": "Médio", "color": "yellow", "badge": "secondary"},
    AnomalySeverity.INFO: {"label": "Info", "color": "blue", "badge": "secondary"},
}

TYPE_DISPLAY: dict[AnomalyType, dict[str, str]] = {
    AnomalyType.ABRUPT_DROP: {"label": "Queda abrupta", "icon": "trending-down"},
    AnomalyType.SALES_SPIKE: {"label": "Pico de vendas", "icon": "trending-up"},
    AnomalyType.NO_SALES: {"label": "Sem vendas", "icon": "x-circle"},
    AnomalyType.GOAL_FAR: {"label": "Meta distante", "icon": "target"},
}

# Most urgent first; used to order the alerts card
SEVERITY_RANK: dict[AnomalySeverity, int] = {
    AnomalySeverity.CRITICAL: 0,
    AnomalySeverity.HIGH: 1,
    AnomalySeverity.MEDIUM: 2,
    AnomalySeverity.INFO: 3,
}


def severity_display(severity: AnomalySeverity | str) -> dict[str, str]:
    return SEVERITY_DISPLAY[AnomalySeverity(severity)]


def type_display(anomaly_type: AnomalyType | str) -> dict[str, str]:
    return TYPE_DISPLAY[AnomalyType(anomaly_type)]
