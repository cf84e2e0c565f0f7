"""Pure domain layer: values, DTOs, roles, and time abstraction. Zero I/O."""
