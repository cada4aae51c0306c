import setuptools

setuptools.setup(
    name='hmcore',
    version='0.1.0',
    author='hmcore developers',
    description=(
        'Hamiltonian Monte Carlo samplers with self-tuning integrator step '
        'sizes'
    ),
    long_description=(
        'hmcore is a Python package providing the core of adaptive Hamiltonian '
        'Monte Carlo (HMC) samplers: phase space points, Euclidean '
        'Hamiltonians, symplectic integrators, a coarse search to initialize '
        'the integrator step size, step size jitter and dual averaging '
        'adaptation, with static and no-U-turn trajectory strategies.'
    ),
    packages=['hmcore'],
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Topic :: Scientific/Engineering',
        'Intended Audience :: Science/Research',
        'Intended Audience :: Developers'
    ],
    keywords='inference sampling MCMC HMC NUTS',
    license='MIT',
    install_requires=['numpy>=1.17', 'scipy>=1.1'],
    python_requires='>=3.6',
    extras_require={
        'autodiff':  ['autograd>=1.3', 'multiprocess>=0.70'],
        'test': ['pytest']
    }
)
