import contextlib
import io

from mysql_wire import version


def test_version() -> None:
    assert isinstance(version.__version__, str)


def test_main() -> None:
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        version.main("__main__")

    assert f"{version.__version__}\n" == out.getvalue()
