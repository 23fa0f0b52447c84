"""Example showing a dry run of a stored workflow."""

import asyncio
import sys

from dripline import AutomationEngine, get_repository


async def main():
    workflow_id = sys.argv[1]
    email = sys.argv[2] if len(sys.argv) > 2 else "test@example.com"

    engine = AutomationEngine(repository=get_repository())
    result = await engine.test_execution(workflow_id, {"email": email})

    for step in result.steps:
        print(f"{step.step_type}: {step.status.value} {step.output or step.error}")
    print(f"{'✅' if result.success else '❌'} {result.steps_executed}/{result.total_steps} steps")


if __name__ == "__main__":
    asyncio.run(main())
