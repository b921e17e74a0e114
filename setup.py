from setuptools import setup

setup(
    name='decisionforest',
    version='1.0',
    py_modules=[
        'class_predict_error',
        'dataset',
        'decision_tree',
        'exceptions',
        'feature_selectors',
        'persistence',
        'random_forest',
        'split_search',
        'validation',
    ],
    description='Random forest of Gini decision trees with normal and rooted feature selection',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.9',
    install_requires=[
        'numpy>=1.22',
        'pandas>=1.4',
    ],
    extras_require={
        'test': ['pytest>=7.0'],
    },
)
