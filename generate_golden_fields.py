#!/usr/bin/env python3
"""
Fill out_image (!!binary) and out_code_hex for a golden YAML record.

The record's `in_image` list (origin first, then words) is encoded as an
image blob and disassembled into a listing.

Usage: python generate_golden_fields.py path/to/golden.yaml
"""

import os
import sys

import yaml

from image import encode_image
from isa import listing


def build_fields(in_image):
    origin, words = int(in_image[0]), [int(w) for w in in_image[1:]]
    return encode_image(origin, words), listing(origin, words)


def main(path):
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}

    in_image = doc.get("in_image")
    if not in_image:
        print("No 'in_image' found in YAML, nothing to encode")
        sys.exit(2)

    blob, code_hex = build_fields(in_image)

    # prefer expect, create it if missing
    target = doc.setdefault("expect", {})
    target["out_image"] = blob  # bytes -> yaml !!binary
    target["out_code_hex"] = code_hex

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_image (!!binary) and out_code_hex (text).")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml")
        sys.exit(1)
    main(sys.argv[1])
