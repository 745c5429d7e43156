"""Allow running the runtime as a module: python -m motor_cortex "<task>"."""

import sys

from motor_cortex.runner import main

if __name__ == "__main__":
    sys.exit(main())
