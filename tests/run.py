import io

from kvwatch.command import main
from kvwatch.util import attrdict


async def run(*args, expect_exit=0):
    """Run the command line, return its output."""
    obj = attrdict(stdout=io.StringIO())
    try:
        await main.main(list(args), standalone_mode=False, obj=obj)
    except SystemExit as exc:
        assert exc.code == expect_exit, exc.code
    else:
        assert expect_exit == 0
    return obj.stdout.getvalue()
