"""
# Errors ------------------------------------------------------------------
"""


class DiseaseMapError(Exception):
    pass


## raised before sampling starts

class ConfigurationError(DiseaseMapError, ValueError):
    pass


class NonIdentifiableModel(ConfigurationError):
    """An area without neighbours leaves its CAR conditional undefined."""

    def __init__(self, message, areas=()):
        super().__init__(message)
        self.areas = tuple(areas)

    def __reduce__(self):
        return (type(self), (str(self), self.areas))


## raised by a chain
# chain errors cross process boundaries, so they pickle with their fields

class DegenerateSample(DiseaseMapError):

    def __init__(self, chain, sweep, name):
        super().__init__(
            "chain " + str(chain) + " produced a non-finite value for '"
            + str(name) + "' at sweep " + str(sweep)
        )
        self.chain = chain
        self.sweep = sweep
        self.name = name

    def __reduce__(self):
        return (type(self), (self.chain, self.sweep, self.name))


class ChainTimeout(DiseaseMapError):

    def __init__(self, chain, sweep, seconds):
        super().__init__(
            "chain " + str(chain) + " exceeded " + str(seconds)
            + "s at sweep " + str(sweep)
        )
        self.chain = chain
        self.sweep = sweep
        self.seconds = seconds

    def __reduce__(self):
        return (type(self), (self.chain, self.sweep, self.seconds))


class RunCancelled(DiseaseMapError):

    def __init__(self, chain, sweep):
        super().__init__("chain " + str(chain) + " cancelled at sweep " + str(sweep))
        self.chain = chain
        self.sweep = sweep

    def __reduce__(self):
        return (type(self), (self.chain, self.sweep))


## raised by the diagnostics

class NumericInstability(DiseaseMapError, ArithmeticError):

    def __init__(self, message, disease=None, areas=()):
        super().__init__(message)
        self.disease = disease
        self.areas = tuple(areas)

    def __reduce__(self):
        return (type(self), (str(self), self.disease, self.areas))
