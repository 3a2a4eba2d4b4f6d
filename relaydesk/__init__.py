"""RelayDesk: multi-tenant message orchestration for customer support."""
