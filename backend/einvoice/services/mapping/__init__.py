# Canonical document mapping
from einvoice.services.mapping.mapper import map_documents, build_invoice
from einvoice.services.mapping.addresses import split_address_lines, to_state_code
from einvoice.services.mapping.ubl import prune, validate_invoice

__all__ = [
    "map_documents",
    "build_invoice",
    "split_address_lines",
    "to_state_code",
    "prune",
    "validate_invoice",
]
