#!/usr/bin/env python
"""Smoke test for a running API: plan (default), apply or destroy the lab stack"""
import os
import sys

import requests
import yaml

BASE_URL = os.getenv("LABSTACK_URL", "http://localhost:8000")
STACK_FILE = os.getenv("LABSTACK_FILE", os.path.join(os.path.dirname(__file__), "stacks", "aws-labs.yaml"))

command = sys.argv[1] if len(sys.argv) > 1 else "plan"
if command not in ("plan", "apply", "destroy"):
    print(f"usage: {sys.argv[0]} [plan|apply|destroy]")
    sys.exit(2)

with open(STACK_FILE, 'r') as f:
    stack = yaml.safe_load(f)

print("=" * 60)
print(f"Testing /{command} against {BASE_URL}")
print("=" * 60)
print(f"\nProject: {stack['project']}")
print(f"Environment: {stack['env']}")
print(f"Region: {stack.get('region')}")
print(f"\nDeclarations: {len(stack['declarations'])}")

if command == "destroy":
    payload = {"project": stack["project"], "env": stack["env"]}
else:
    payload = {"stack": stack}

try:
    response = requests.post(
        f"{BASE_URL}/{command}",
        json=payload,
        timeout=600  # 10 minutes for a full apply
    )

    print(f"\nStatus Code: {response.status_code}")

    if response.status_code != 200:
        print(f"\n[ERROR] {command} rejected!")
        print(f"\nResponse: {response.text[:2000]}")
        sys.exit(1)

    result = response.json()
    summary = result["plan"]["summary"]
    print("\nPlan Summary:")
    for action in ("create", "update", "replace", "destroy", "unchanged"):
        print(f"  {action}: {summary[action]}")

    for warning in result["validation"].get("warnings", [])[:10]:
        print(f"  [WARNING] {warning}")

    print("\nExecution order (showing first 15):")
    order = result["plan"]["execution_order"]
    for i, key in enumerate(order[:15], 1):
        print(f"  {i}. {key}")
    if len(order) > 15:
        print(f"  ... and {len(order) - 15} more steps")

    if "result" in result:
        if result["success"]:
            print("\n[SUCCESS] Completed!")
        else:
            print("\n[ERROR] Some steps did not complete:")
            print(result["report"])
            sys.exit(1)

except requests.exceptions.ConnectionError:
    print(f"\n[ERROR] Could not connect to server at {BASE_URL}")
    print("Make sure the server is running!")
    sys.exit(1)
