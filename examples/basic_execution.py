# Basic usage example

import asyncio
from agent_shield import ActionExecutor, ShieldConfig

async def main():
    # Wire everything from SHIELD_* environment variables (docker backend by default)
    executor = ActionExecutor.from_config(ShieldConfig.from_env(), session_id="demo-001")

    try:
        # Blocked before any sandbox is created
        result = await executor.navigate("http://169.254.169.254/latest/meta-data/")
        print(f"✓ Metadata endpoint blocked: {result.reason}")

        # Fetched inside a network-jailed sandbox and sanitized
        result = await executor.navigate("https://docs.python.org/3/library/asyncio.html")
        if result.blocked:
            print(f"\n❌ Navigation blocked: {result.reason}")
        else:
            print("\n✅ Navigation successful!")
            print(f"Content: {result.content[:500]}")

        # Command output is redacted before it comes back
        result = await executor.run_command("echo my key is sk-ABCDEFGHIJKLMNOPQRST1234")
        print(f"\nCommand output: {result.content}")

        # Anything the agent sends out goes through the censor
        print(f"Delivered: {executor.deliver('contact me at someone@example.com')}")

        print()
        print(executor.summary())

    except Exception as e:
        print(f"\n❗ Error: {e}")

    finally:
        await executor.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
