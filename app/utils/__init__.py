"""
Utils package
"""
from .data_utils import (
    get_request_data,
    parse_bool,
    parse_float,
    parse_int,
    error_response
)

__all__ = [
    'get_request_data',
    'parse_bool',
    'parse_float',
    'parse_int',
    'error_response'
]
