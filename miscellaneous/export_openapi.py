#!/usr/bin/env python3
"""
Export the OpenAPI specification of the Guideway Booking Platform API.

The generated JSON can be used for API documentation, client generation and
testing tools.
"""

import json
import os
import sys

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from guideway_booking_platform.main import create_app


def export_openapi_spec(output_file: str = "openapi.json") -> dict:
    """Write the OpenAPI schema to ``output_file`` and return it."""
    openapi_schema = create_app().openapi()

    with open(output_file, "w", encoding="utf-8") as f:
        json.dump(openapi_schema, f, indent=2, ensure_ascii=False)
    return openapi_schema


def main():
    output_file = sys.argv[1] if len(sys.argv) > 1 else "openapi.json"
    print("Exporting OpenAPI specification...")

    try:
        schema = export_openapi_spec(output_file)
    except OSError as e:
        print(f"Failed to write {output_file}: {e}")
        sys.exit(1)

    paths = schema.get("paths", {})
    endpoint_count = sum(len(methods) for methods in paths.values())
    print(f"OpenAPI specification exported to: {output_file}")
    print(f"API title: {schema.get('info', {}).get('title', 'unknown')}")
    print(f"API version: {schema.get('info', {}).get('version', 'unknown')}")
    print(f"Total endpoints: {endpoint_count}")

    print("\nAvailable paths:")
    for path in sorted(paths.keys()):
        methods = list(paths[path].keys())
        print(f"  {path}: {', '.join(method.upper() for method in methods)}")


if __name__ == "__main__":
    main()
