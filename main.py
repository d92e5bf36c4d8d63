import sys
import os
sys.path.append(os.path.abspath(os.path.dirname(__file__)))

from vps_agent.main import run

if __name__ == "__main__":
    run()
