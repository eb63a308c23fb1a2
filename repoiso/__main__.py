"""python -m repoiso 入口（ProcessUnit 通过它启动执行单元）"""

from repoiso.cli import main

if __name__ == "__main__":
    main()
