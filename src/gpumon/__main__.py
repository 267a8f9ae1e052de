import sys

from gpumon._cli import main

sys.exit(main())
