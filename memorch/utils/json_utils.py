"""
JSON utilities for cleaning LLM responses.
"""


def clean_json_response(response: str) -> str:
    """Strip code fences and any prose around the JSON payload of an LLM response.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    response = response.strip()

    # Drop leading prose before the first array/object
    starts = [i for i in (response.find('['), response.find('{')) if i >= 0]
    if starts and min(starts) > 0:
        response = response[min(starts):]

    return response
