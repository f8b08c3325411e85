"""
程序入口

    python main.py run -c config.yaml
    python main.py check -c config.yaml
"""

from kiyoshi.cli import main

if __name__ == "__main__":
    main()
