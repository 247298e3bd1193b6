"""
Configuration subsystem for Clerk.

- **config.py**: static configuration from environment variables (.env support)
- **manager.py**: dot-notation engine settings from ``config/*.yaml``

``ConfigManager`` is imported from ``clerk.core.config.manager`` directly; this
package only re-exports the static layer so that the logging subsystem can
depend on it without an import cycle.

Usage
-----
```python
from clerk.core.config import Config
from clerk.core.config.manager import ConfigManager

Config.DATABASE_URL
ConfigManager.get("auth.lockout.permanent_after", 20)
```
"""

from clerk.core.config.config import Config, Environment

__all__ = ["Config", "Environment"]
