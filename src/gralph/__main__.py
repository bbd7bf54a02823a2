from gralph.main import gralph

if __name__ == "__main__":  # pragma: no cover
    gralph()
