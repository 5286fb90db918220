# Init Module
# AUTO-DOC-INDEX
#
# ES: Índice rápido
#   1) Propósito del módulo
#   2) Componentes principales
#   3) Puntos de extensión
#
# EN: Quick index
#   1) Module purpose
#   2) Main components
#   3) Extension points
#
# Secciones / Sections:
#   - Configuración / Configuration
#   - Lógica principal / Core logic
#   - Integraciones / Integrations

"""Núcleo de conteo legislativo y checkpoints de auditoría por JRV.

English:
    Legislative tally core and audit checkpoints for a single polling station.
"""

__version__ = "0.3.0"
