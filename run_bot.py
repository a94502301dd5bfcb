from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from xui_bot.bot import main


if __name__ == "__main__":
    # Optional first argument: path to an alternative passwords.txt.
    main(Path(sys.argv[1]) if len(sys.argv) > 1 else None)
