"""
Catalog Automation Engine

Trigger -> conditions -> actions workflows over data-catalog records:
- {{token}} interpolation and condition evaluation
- Record, notification, agent, webhook, AI and data-quality actions
- Cooldowns, hourly run limits, and an auditable run history
"""

__version__ = "0.1.0"
