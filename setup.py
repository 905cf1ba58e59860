from setuptools import setup, find_packages

setup(
    name="monoslam",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    install_requires=[
        "numpy",
        "opencv-python",
        "scipy",
        "scikit-learn",
        "matplotlib",
        "pyyaml",
    ],
    extras_require={
        "test": ["pytest"],
    },
    author="Nitin Thakkar",
    author_email="thakkarnitin1998@gmail.com",
    description="A monocular visual SLAM core: feature tracking, keyframe mapping and local bundle adjustment",
    python_requires=">=3.8",
)
