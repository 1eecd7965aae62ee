"""
Input normalization shared by order entry and payments
"""
import re

from furniture_shop.errors import InvalidPhoneNumber

COUNTRY_CODE = "254"
_STRIP_PATTERN = re.compile(r"[\s\-+]")


def normalize_phone_number(phone: str) -> str:
    """
    Normalize a Kenyan mobile number to the 12-digit 254XXXXXXXXX form
    
    Whitespace, hyphens and plus signs are stripped, a leading 0 is replaced
    with the country code and numbers without the country code get it
    prepended.
    
    Raises:
        InvalidPhoneNumber: If the result is not exactly 12 digits
    """
    if not phone:
        raise InvalidPhoneNumber("Phone number is required")
    
    cleaned = _STRIP_PATTERN.sub("", str(phone))
    
    if cleaned.startswith("0"):
        cleaned = COUNTRY_CODE + cleaned[1:]
    
    if not cleaned.startswith(COUNTRY_CODE):
        cleaned = COUNTRY_CODE + cleaned
    
    if len(cleaned) != 12 or not cleaned.isdigit():
        raise InvalidPhoneNumber(f"Invalid phone number format: {phone}")
    
    return cleaned
