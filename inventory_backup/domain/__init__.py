"""Pure backup domain: value types, retention planning, schedule evaluation. ZERO I/O."""
