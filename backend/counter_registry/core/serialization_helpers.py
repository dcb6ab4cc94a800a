"""
Generic serialization helpers.
No business logic here, only formatting for JSON payloads.
"""
def serialize_decimal(value):
    """Convert Decimal to float for JSON serialization"""
    if value is None:
        return None
    return float(value)

def serialize_datetime(value):
    """Convert datetime to an ISO string for JSON serialization"""
    if value is None:
        return None
    return value.isoformat()

def serialize_date(value):
    """Convert date to YYYY-MM-DD for JSON serialization"""
    if value is None:
        return None
    return value.strftime("%Y-%m-%d")
