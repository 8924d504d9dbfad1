from pathlib import Path
import sys

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
