import os

# Qt must not look for a display when the workers are tested
os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
