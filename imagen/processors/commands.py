import asyncio


async def run_command(*args: str, timeout: float = 300) -> tuple[bool, str]:
    """Run an external tool without a shell and return (success, output)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return False, f"{args[0]} not found on PATH"

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return False, "Command timed out"

    output = stdout.decode(errors="replace")
    if proc.returncode != 0 and stderr:
        output += stderr.decode(errors="replace")
    return proc.returncode == 0, output.strip()
