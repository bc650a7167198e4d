from ninja_deploy.cli import dispatch

if __name__ == "__main__":
    dispatch()
