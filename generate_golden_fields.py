#!/usr/bin/env python3
"""
Generate out_code (!!binary) and out_code_hex for a golden YAML record.
Usage: python generate_golden_fields.py path/to/golden.yaml
"""

import os
import sys

import yaml

from assembler import assemble
from isa import disassemble


def main(path):
    if not os.path.exists(path):
        print("File not found:", path)
        return 2

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)

    src_spec = doc.get("source")
    if not src_spec:
        print("No 'source' found in YAML - nothing to assemble")
        return 2

    lang = src_spec.get("language", "asm")
    if lang != "asm":
        print("Unsupported language for auto-generation:", lang)
        return 2

    code_bytes = assemble(src_spec.get("code", ""))

    # choose where to place: prefer expect then out
    if "expect" in doc:
        target = doc["expect"]
    elif "out" in doc:
        target = doc["out"]
    else:
        doc["expect"] = {}
        target = doc["expect"]

    target["out_code"] = code_bytes  # bytes -> yaml !!binary
    target["out_code_hex"] = disassemble(code_bytes)

    # write back YAML (use block style where possible)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_code (!!binary) and out_code_hex (text).")
    return 0


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml")
        sys.exit(1)
    sys.exit(main(sys.argv[1]))
