from .cli import cli


def launch():
    cli(prog_name='certkeeper')


if __name__ == '__main__':
    launch()
